"""Cross-run MEMORY.md / USER.md synthesis through the subagent scheduler."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from reclaw.core.errors import MainDocUpdateError
from reclaw.extract.session_refs import collect_result_session_entries, format_provider_list
from reclaw.scheduler.base import OpenClawError
from reclaw.scheduler.openclaw import OpenClawClient
from reclaw.storage.models import AggregatedInsights, BatchExtractionResult, ExtractionMode

MEMORY_SECTION_START = "<!-- reclaw-memory:start -->"
MEMORY_SECTION_END = "<!-- reclaw-memory:end -->"
USER_SECTION_START = "<!-- reclaw-user:start -->"
USER_SECTION_END = "<!-- reclaw-user:end -->"

MAIN_DOCS_SESSION_NAME = "reclaw-main-docs"
MAX_SUMMARY_DIGEST_CHARS = 48_000
MAX_INLINE_ITEMS = 25

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class MainDocRequest:
    mode: ExtractionMode
    target_path: str
    memory_workspace_path: str
    model: str
    insights: AggregatedInsights
    results: Sequence[BatchExtractionResult]
    memory_file: Path
    user_file: Path


async def update_main_docs(client: OpenClawClient, request: MainDocRequest) -> None:
    """Ask the main agent to rewrite the managed sections and verify that it did."""
    memory_before = _read_if_exists(request.memory_file)
    user_before = _read_if_exists(request.user_file)

    try:
        scheduled = await client.schedule(
            build_main_docs_prompt(request),
            model=request.model,
            session_name=MAIN_DOCS_SESSION_NAME,
        )
    except OpenClawError as exc:
        raise MainDocUpdateError(f"Main agent doc update failed: {exc}") from exc
    try:
        await client.await_result(scheduled.job_id)
    except OpenClawError as exc:
        await client.cancel(scheduled.job_id)
        raise MainDocUpdateError(f"Main agent doc update failed: {exc}") from exc

    verify_main_docs(request.memory_file, request.user_file, memory_before, user_before)


def verify_main_docs(memory_file: Path, user_file: Path, memory_before: str, user_before: str) -> None:
    """Check existence, managed markers and an actual content change, in that order."""
    missing = [str(path) for path in (memory_file, user_file) if not path.is_file()]
    if missing:
        raise MainDocUpdateError(f"Main agent did not produce expected file updates: {', '.join(missing)}")

    memory_after = memory_file.read_text(encoding="utf-8")
    user_after = user_file.read_text(encoding="utf-8")

    if not has_managed_section(memory_after, MEMORY_SECTION_START, MEMORY_SECTION_END):
        raise MainDocUpdateError(f"Main agent did not write required managed section markers in {memory_file}")
    if not has_managed_section(user_after, USER_SECTION_START, USER_SECTION_END):
        raise MainDocUpdateError(f"Main agent did not write required managed section markers in {user_file}")

    unchanged = [
        str(path)
        for path, before, after in ((memory_file, memory_before, memory_after), (user_file, user_before, user_after))
        if _digest(before) == _digest(after)
    ]
    if unchanged:
        raise MainDocUpdateError(f"Main agent did not modify expected files: {', '.join(unchanged)}")


def has_managed_section(content: str, start_marker: str, end_marker: str) -> bool:
    start = content.find(start_marker)
    if start == -1:
        return False
    return content.find(end_marker, start + len(start_marker)) != -1


def _digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _read_if_exists(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def format_inline_list(title: str, values: Sequence[str]) -> str:
    if not values:
        return f"{title}: n/a"
    return f"{title}: {'; '.join(values[:MAX_INLINE_ITEMS])}"


def serialize_batch_summaries(results: Sequence[BatchExtractionResult], max_chars: int) -> str:
    """One digest line per non-empty batch summary, ordered by date, providers and id."""
    ordered = sorted(results, key=lambda result: (result.date, ",".join(result.providers), result.batch_id))
    lines: list[str] = []
    consumed = 0

    for result in ordered:
        summary = _WHITESPACE_RE.sub(" ", result.extraction.summary).strip()
        if not summary:
            continue
        refs = ", ".join(
            f"{entry.id}@{entry.timestamp}" if entry.timestamp else entry.id
            for entry in collect_result_session_entries(result)
        )
        line = f"- {result.date} | {format_provider_list(result.providers)} | {refs or 'no-session-ref'} | {summary}"
        if consumed + len(line) + 1 > max_chars:
            lines.append(f"- ... truncated after {len(lines)} summaries to stay within the prompt size limit.")
            break
        lines.append(line)
        consumed += len(line) + 1

    return "\n".join(lines) if lines else "- n/a"


def build_main_docs_prompt(request: MainDocRequest) -> str:
    insights = request.insights
    hints = "\n".join(
        [
            f"Summary: {insights.summary or 'No summary captured.'}",
            format_inline_list("Projects", insights.projects),
            format_inline_list("Interests", insights.interests),
            format_inline_list("Facts", insights.facts),
            format_inline_list("Preferences", insights.preferences),
            format_inline_list("People", insights.people),
            format_inline_list("Decisions", insights.decisions),
        ]
    )

    return "\n".join(
        [
            "You are Reclaw's main synthesis agent.",
            "Use your own tools to edit files directly on disk.",
            "",
            "Task:",
            f"1. Update {request.memory_file}",
            f"2. Update {request.user_file}",
            "",
            "Constraints:",
            "- Preserve all content outside managed sections.",
            "- Backups already exist next to target files (.bak or .bak.<timestamp>); do not modify backup files.",
            "- If target files do not exist, create them.",
            "- Keep outputs concise, durable, and high-signal.",
            "- Re-filter aggressively: if an item is general knowledge (even if it appeared in subagent output), "
            "exclude it.",
            "- Do not treat one-off questions as durable interests.",
            "- If a fact is true for nearly all users of a technology, exclude it unless the item is specific to "
            "this user's setup/decision.",
            "",
            "Managed section requirements:",
            f"- MEMORY.md section markers: {MEMORY_SECTION_START} ... {MEMORY_SECTION_END}",
            f"- USER.md section markers: {USER_SECTION_START} ... {USER_SECTION_END}",
            "- Replace existing section content when markers exist; otherwise append a new managed section.",
            "",
            "MEMORY.md managed section format:",
            "Updated: <ISO-8601 timestamp>",
            f"Model: {request.model}",
            f"Mode: {request.mode}",
            "",
            "Summary: <single concise paragraph>",
            "Projects: <semicolon-separated list or n/a>",
            "Interests: <semicolon-separated list or n/a>",
            "Facts: <semicolon-separated list or n/a>",
            "Preferences: <semicolon-separated list or n/a>",
            "People: <semicolon-separated list or n/a>",
            "Decisions: <semicolon-separated list or n/a>",
            "",
            "USER.md managed section format:",
            "Updated: <ISO-8601 timestamp>",
            f"Model: {request.model}",
            f"Mode: {request.mode}",
            "",
            "High-priority durable user context:",
            "- One bullet per item, max 40 bullets total, or '- n/a' when empty.",
            "",
            "Run context:",
            f"- Output mode: {request.mode}",
            f"- Output target path: {request.target_path}",
            f"- Memory workspace path: {request.memory_workspace_path}",
            "",
            "Aggregated signal hints:",
            hints,
            "",
            "Per-subagent summaries from this run:",
            serialize_batch_summaries(request.results, MAX_SUMMARY_DIGEST_CHARS),
            "",
            "After edits are complete, respond with a short status summary only.",
        ]
    )
