from __future__ import annotations

from conftest import make_result

from reclaw.extract.session_refs import (
    collect_session_entries,
    collect_session_refs,
    format_provider_list,
    summarize_providers,
)
from reclaw.storage.models import BatchExtractionResult, Provider


def test_session_entries_prefer_timestamps_and_sort_timestamped_first() -> None:
    results = [
        make_result("b1", refs=[(Provider.CHATGPT, "c2", None), (Provider.CLAUDE, "x1", "2026-01-05T12:00:00.000Z")]),
        make_result("b2", refs=[(Provider.CHATGPT, "c2", "2026-01-05T08:00:00.000Z"), (Provider.GROK, "a", None)]),
    ]

    entries = collect_session_entries(results)

    assert [(entry.id, entry.timestamp) for entry in entries] == [
        ("chatgpt:c2", "2026-01-05T08:00:00.000Z"),
        ("claude:x1", "2026-01-05T12:00:00.000Z"),
        ("grok:a", None),
    ]


def test_collect_session_refs_falls_back_to_conversation_ids() -> None:
    legacy = BatchExtractionResult.model_validate(
        {"providers": ["claude"], "conversationIds": ["x2", "x1"], "extraction": {"summary": ""}}
    )

    assert collect_session_refs([legacy]) == ["claude:x1 — unknown", "claude:x2 — unknown"]


def test_summarize_providers() -> None:
    results = [
        make_result("b1", refs=[(Provider.CHATGPT, "c1", None), (Provider.CHATGPT, "c2", None)]),
        make_result("b2", refs=[(Provider.GROK, "g1", None)]),
    ]

    assert summarize_providers(results) == "ChatGPT (2), Grok (1)"
    assert summarize_providers([]) == "n/a"
    assert format_provider_list([Provider.CHATGPT, Provider.CLAUDE]) == "ChatGPT+Claude"
    assert format_provider_list([]) == "unknown-provider"
