from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from functools import lru_cache
from importlib import resources
from typing import Any

from reclaw.core.errors import PromptTemplateError
from reclaw.extract.filters import sanitize_summary
from reclaw.storage.models import (
    PROVIDER_LABELS,
    ConversationBatch,
    ExtractionMode,
    NormalizedConversation,
    NormalizedMessage,
    SubagentExtraction,
)

DEFAULT_MAX_PROMPT_CHARS = 110_000
MESSAGE_SAMPLE_LIMIT = 28
MESSAGE_CLIP_CHARS = 900

AGENT_TEMPLATE = "agent.md"
SUBAGENT_TEMPLATE = "subagent.md"

_TEMPLATE_VAR_RE = re.compile(r"\{\{\s*([a-z0-9_]+)\s*\}\}", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?\s*```$")


@lru_cache(maxsize=None)
def load_prompt_template(name: str) -> str:
    resource = resources.files("reclaw.extract").joinpath("prompts", name)
    try:
        return resource.read_text(encoding="utf-8").rstrip()
    except FileNotFoundError as exc:
        raise PromptTemplateError(f"Missing prompt template '{name}'") from exc


def render_template(template: str, variables: dict[str, str]) -> str:
    """Substitute ``{{ name }}`` placeholders. Unknown names are an error."""
    missing: set[str] = set()

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            missing.add(key)
            return match.group(0)
        return variables[key]

    rendered = _TEMPLATE_VAR_RE.sub(_replace, template)
    if missing:
        raise PromptTemplateError(f"Prompt template is missing values for: {', '.join(sorted(missing))}")
    return rendered


def format_provider_summary(conversations: Iterable[NormalizedConversation]) -> str:
    counts = Counter(conversation.source for conversation in conversations)
    return ", ".join(
        f"{PROVIDER_LABELS[provider]} ({count})" for provider, count in sorted(counts.items())
    )


def output_instruction(
    mode: ExtractionMode,
    date: str,
    output_path: str,
    memory_workspace_path: str,
) -> str:
    lead = "Produce one concise MOST IMPORTANT summary for these conversation(s);"
    if mode == ExtractionMode.OPENCLAW:
        return (
            f"{lead} the main Reclaw process will build memory/{date}.md and update "
            f"MEMORY.md/USER.md in {memory_workspace_path}."
        )
    return (
        f"{lead} the main Reclaw process will update Zettelclaw journal sections in {output_path} "
        f"and update MEMORY.md/USER.md in {memory_workspace_path}."
    )


def build_prompt(
    batch: ConversationBatch,
    *,
    mode: ExtractionMode,
    output_path: str,
    memory_workspace_path: str,
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """Render the extraction prompt for one batch."""
    provider_label = format_provider_summary(batch.conversations)
    agent_prompt = render_template(
        load_prompt_template(AGENT_TEMPLATE),
        {"provider_label": provider_label},
    )
    subagent_prompt = render_template(
        load_prompt_template(SUBAGENT_TEMPLATE),
        {
            "output_instruction": output_instruction(mode, batch.date, output_path, memory_workspace_path),
            "providers": provider_label,
            "date": batch.date,
            "batch_index": str(batch.index),
            "batch_total": str(batch.total_for_date),
            "conversation_count": str(len(batch.conversations)),
            "conversations_markdown": serialize_conversations(batch.conversations, max_prompt_chars),
        },
    )
    return "\n".join([agent_prompt, "", subagent_prompt])


def serialize_conversations(conversations: Sequence[NormalizedConversation], max_chars: int) -> str:
    chunks: list[str] = []
    consumed = 0
    for conversation in conversations:
        chunk = serialize_conversation(conversation)
        if consumed + len(chunk) > max_chars:
            chunks.append(
                f"... prompt truncated after {len(chunks)} conversations due to the prompt size limit ({max_chars:,} chars)."
            )
            break
        chunks.append(chunk)
        consumed += len(chunk)
    return "\n\n".join(chunks)


def serialize_conversation(conversation: NormalizedConversation) -> str:
    lines = [
        f"### {conversation.title}",
        f"provider: {conversation.source}",
        f"id: {conversation.id}",
        f"created: {conversation.created_at}",
        f"messages: {conversation.message_count}",
    ]
    for number, message in enumerate(sample_messages(conversation.messages, MESSAGE_SAMPLE_LIMIT), start=1):
        lines.append(_format_message(number, message))
    return "\n".join(lines)


def _format_message(number: int, message: NormalizedMessage) -> str:
    model = f" ({message.model})" if message.model else ""
    timestamp = f" @ {message.timestamp}" if message.timestamp else ""
    return f"{number}. [{message.role}{model}{timestamp}] {clip_text(message.content, MESSAGE_CLIP_CHARS)}"


def sample_messages(messages: Sequence[NormalizedMessage], limit: int) -> list[NormalizedMessage]:
    """Keep the opening and closing messages of long conversations."""
    if len(messages) <= limit:
        return list(messages)
    head = (limit + 1) // 2
    tail = limit // 2
    return [*messages[:head], *messages[len(messages) - tail :]]


def clip_text(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]} ..."


def strip_markdown_fences(raw: str) -> str:
    trimmed = raw.strip()
    match = _FENCE_RE.match(trimmed)
    if match:
        return match.group(1).strip()
    return trimmed


def _parse_embedded_json(raw: str) -> Any:
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(raw[start : end + 1])
    except json.JSONDecodeError:
        return None


def parse_response(raw_response: str) -> SubagentExtraction:
    """Parse a subagent reply into a cleaned extraction. Never raises on bad input."""
    cleaned = strip_markdown_fences(raw_response)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = _parse_embedded_json(cleaned)

    if not isinstance(parsed, dict):
        return SubagentExtraction()

    summary = parsed.get("summary")
    raw_summary = summary.strip() if isinstance(summary, str) else ""
    return SubagentExtraction(summary=sanitize_summary(raw_summary))
