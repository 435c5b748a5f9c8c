from __future__ import annotations

import json
import re
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from reclaw.core.runner import CommandResult
from reclaw.extract.main_docs import (
    MAIN_DOCS_SESSION_NAME,
    MEMORY_SECTION_END,
    MEMORY_SECTION_START,
    USER_SECTION_END,
    USER_SECTION_START,
)
from reclaw.scheduler.openclaw import OpenClawClient
from reclaw.storage.models import (
    BatchConversationRef,
    BatchExtractionResult,
    NormalizedConversation,
    NormalizedMessage,
    Provider,
    SubagentExtraction,
)

DEFAULT_SUMMARY = "Decision: Use uv for Python projects\nFact: Lives in Berlin\nTodo: Migrate CI to uv"

_UPDATE_LINE_RE = re.compile(r"^\d\. Update (.+)$", re.MULTILINE)


def _arg(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


class FakeOpenClaw:
    """In-memory stand-in for the ``openclaw`` CLI.

    ``cron add`` registers a job, ``cron runs`` reports it finished with the summary
    produced by ``respond``. Main-doc jobs write the managed sections into the files
    named in their prompt, as the real main agent would.
    """

    def __init__(
        self,
        respond: Callable[[str], str] | None = None,
        *,
        fail_when: Callable[[str], bool] | None = None,
        write_main_docs: bool = True,
        models: list[dict[str, Any]] | None = None,
        agents: list[dict[str, Any]] | None = None,
    ):
        self.respond = respond or (lambda _message: json.dumps({"summary": DEFAULT_SUMMARY}))
        self.fail_when = fail_when
        self.write_main_docs = write_main_docs
        self.models = models if models is not None else [
            {"key": "anthropic/claude-haiku", "name": "Claude Haiku", "tags": ["default", "alias:haiku"]},
            {"key": "openai/gpt-mini", "name": "GPT Mini", "tags": []},
        ]
        self.agents = agents or []
        self.calls: list[list[str]] = []
        self.jobs: dict[str, dict[str, str]] = {}
        self.removed: list[str] = []
        self._lock = threading.Lock()

    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        with self._lock:
            self.calls.append([command, *args])

        if args[:2] == ["cron", "add"]:
            with self._lock:
                job_id = f"job-{len(self.jobs) + 1}"
                self.jobs[job_id] = {"name": _arg(args, "--name"), "message": _arg(args, "--message")}
            return CommandResult(0, json.dumps({"id": job_id}))

        if args[:2] == ["cron", "runs"]:
            return self._runs(_arg(args, "--id"))

        if args[:2] == ["cron", "rm"]:
            with self._lock:
                self.removed.append(args[2])
            return CommandResult(0, "{}")

        if args[0] == "models":
            return CommandResult(0, json.dumps({"models": self.models}))

        if args[0] == "status":
            return CommandResult(0, json.dumps({"agents": {"agents": self.agents}}))

        return CommandResult(1, stderr=f"unexpected command: {' '.join(args)}")

    def _runs(self, job_id: str) -> CommandResult:
        job = self.jobs[job_id]
        message = job["message"]

        if job["name"] == MAIN_DOCS_SESSION_NAME:
            if self.write_main_docs:
                write_managed_sections(message)
            entry = {"action": "finished", "status": "ok", "summary": "Updated both files.", "ts": 1}
        elif self.fail_when is not None and self.fail_when(message):
            entry = {"action": "finished", "status": "error", "error": "model crashed", "ts": 1}
        else:
            entry = {"action": "finished", "status": "ok", "summary": self.respond(message), "ts": 1}
        return CommandResult(0, json.dumps({"entries": [entry]}))

    def commands(self, *prefix: str) -> list[list[str]]:
        return [call[1:] for call in self.calls if call[1 : 1 + len(prefix)] == list(prefix)]


def write_managed_sections(prompt: str) -> None:
    memory_path, user_path = (Path(match) for match in _UPDATE_LINE_RE.findall(prompt)[:2])
    for path, start, end in (
        (memory_path, MEMORY_SECTION_START, MEMORY_SECTION_END),
        (user_path, USER_SECTION_START, USER_SECTION_END),
    ):
        before = path.read_text(encoding="utf-8") if path.exists() else ""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{before}\n{start}\nUpdated: now\n{end}\n", encoding="utf-8")


def make_conversation(
    conversation_id: str,
    *,
    provider: Provider = Provider.CHATGPT,
    created_at: str = "2026-01-05T10:00:00.000Z",
    updated_at: str | None = None,
    title: str = "",
    messages: list[tuple[str, str]] | None = None,
) -> NormalizedConversation:
    pairs = messages if messages is not None else [("human", "How should I manage Python deps?"), ("assistant", "Use uv.")]
    return NormalizedConversation(
        id=conversation_id,
        title=title or f"Conversation {conversation_id}",
        source=provider,
        created_at=created_at,
        updated_at=updated_at,
        messages=[NormalizedMessage(role=role, content=content) for role, content in pairs],
    )


def make_result(
    batch_id: str,
    *,
    date: str = "2026-01-05",
    summary: str = DEFAULT_SUMMARY,
    refs: list[tuple[Provider, str, str | None]] | None = None,
) -> BatchExtractionResult:
    ref_models = [
        BatchConversationRef(provider=provider, id=conversation_id, timestamp=timestamp)
        for provider, conversation_id, timestamp in (refs or [(Provider.CHATGPT, f"{batch_id}-c1", None)])
    ]
    return BatchExtractionResult(
        batch_id=batch_id,
        providers=sorted({ref.provider for ref in ref_models}),
        date=date,
        conversation_ids=[ref.id for ref in ref_models],
        conversation_refs=ref_models,
        conversation_count=len(ref_models),
        extraction=SubagentExtraction(summary=summary),
    )


@pytest.fixture
def fake_openclaw() -> FakeOpenClaw:
    return FakeOpenClaw()


@pytest.fixture
def client(fake_openclaw: FakeOpenClaw) -> OpenClawClient:
    return OpenClawClient(fake_openclaw, poll_interval=0, wait_timeout_seconds=5)
