"""Provider-qualified conversation references (``<provider>:<id>``) for footers."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from reclaw.storage.models import PROVIDER_LABELS, BatchConversationRef, BatchExtractionResult, Provider


@dataclass(frozen=True)
class SessionEntry:
    id: str
    timestamp: str | None = None


def _result_refs(result: BatchExtractionResult) -> list[BatchConversationRef]:
    if result.conversation_refs:
        return list(result.conversation_refs)
    provider = result.providers[0] if result.providers else Provider.CHATGPT
    return [
        BatchConversationRef(provider=provider, id=conversation_id)
        for conversation_id in result.conversation_ids
        if conversation_id.strip()
    ]


def summarize_providers(results: Iterable[BatchExtractionResult]) -> str:
    """``ChatGPT (3), Claude (1)`` style provider counts, or ``n/a``."""
    counts: Counter[Provider] = Counter()
    for result in results:
        if result.conversation_refs:
            counts.update(ref.provider for ref in result.conversation_refs)
        elif result.providers:
            counts[result.providers[0]] += result.conversation_count

    summary = ", ".join(f"{PROVIDER_LABELS[provider]} ({count})" for provider, count in counts.items())
    return summary or "n/a"


def collect_session_refs(results: Iterable[BatchExtractionResult]) -> list[str]:
    """Sorted ``provider:id — timestamp`` lines for every referenced conversation."""
    refs: set[str] = set()
    for result in results:
        for ref in _result_refs(result):
            conversation_id = ref.id.strip()
            if not conversation_id:
                continue
            timestamp = (ref.timestamp or "").strip() or "unknown"
            refs.add(f"{ref.provider}:{conversation_id} — {timestamp}")
    return sorted(refs)


def collect_result_session_entries(result: BatchExtractionResult) -> list[SessionEntry]:
    by_id: dict[str, SessionEntry] = {}
    for ref in _result_refs(result):
        conversation_id = ref.id.strip()
        if not conversation_id:
            continue
        full_id = f"{ref.provider}:{conversation_id}"
        timestamp = (ref.timestamp or "").strip() or None
        existing = by_id.get(full_id)
        if existing is None or (existing.timestamp is None and timestamp):
            by_id[full_id] = SessionEntry(id=full_id, timestamp=timestamp)
    return sorted(by_id.values(), key=lambda entry: entry.id)


def _entry_sort_key(entry: SessionEntry) -> tuple[int, str, str]:
    # Timestamped entries first, in time order, then the rest by id.
    if entry.timestamp:
        return (0, entry.timestamp, entry.id)
    return (1, "", entry.id)


def collect_session_entries(results: Iterable[BatchExtractionResult]) -> list[SessionEntry]:
    by_id: dict[str, SessionEntry] = {}
    for result in results:
        for entry in collect_result_session_entries(result):
            existing = by_id.get(entry.id)
            if existing is None or (existing.timestamp is None and entry.timestamp):
                by_id[entry.id] = entry
    return sorted(by_id.values(), key=_entry_sort_key)


def format_provider_list(providers: Iterable[Provider]) -> str:
    labels = [PROVIDER_LABELS[provider] for provider in providers]
    return "+".join(labels) if labels else "unknown-provider"
