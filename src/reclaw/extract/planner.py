from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from reclaw.storage.models import (
    ALL_PROVIDERS,
    ConversationBatch,
    ExtractionMode,
    NormalizedConversation,
    Provider,
)


@dataclass(frozen=True)
class BatchPlan:
    batches: list[ConversationBatch]
    conversation_count: int


def canonical_providers(selected: Iterable[Provider | str]) -> list[Provider]:
    """Selected providers, deduplicated, in the fixed provider order."""
    wanted = {Provider(value) for value in selected}
    return [provider for provider in ALL_PROVIDERS if provider in wanted]


def _conversation_sort_key(conversation: NormalizedConversation) -> tuple[str, str, str, str]:
    return (
        conversation.created_at,
        conversation.updated_at or "",
        conversation.source.value,
        conversation.id,
    )


def batch_date(conversation: NormalizedConversation) -> str:
    # Day bucket is the leading YYYY-MM-DD of the stored timestamp.
    return conversation.created_at[:10]


def build_batch_id(date: str, conversations: Sequence[NormalizedConversation]) -> str:
    digest = hashlib.sha1()
    digest.update(date.encode("utf-8"))
    for conversation in conversations:
        digest.update(conversation.source.value.encode("utf-8"))
        digest.update(conversation.id.encode("utf-8"))
    return f"date-{date}-{digest.hexdigest()[:12]}"


def plan_batches(
    provider_conversations: Mapping[Provider, Sequence[NormalizedConversation]],
    selected_providers: Iterable[Provider | str],
) -> BatchPlan:
    """Group every selected conversation into one batch per calendar date."""
    by_date: dict[str, list[NormalizedConversation]] = {}
    conversation_count = 0

    for provider in canonical_providers(selected_providers):
        conversations = provider_conversations.get(provider, ())
        conversation_count += len(conversations)
        for conversation in conversations:
            by_date.setdefault(batch_date(conversation), []).append(conversation)

    batches: list[ConversationBatch] = []
    for date in sorted(by_date):
        conversations = sorted(by_date[date], key=_conversation_sort_key)
        providers = canonical_providers(conversation.source for conversation in conversations)
        batches.append(
            ConversationBatch(
                id=build_batch_id(date, conversations),
                providers=providers,
                date=date,
                index=1,
                total_for_date=1,
                conversations=conversations,
            )
        )

    return BatchPlan(batches=batches, conversation_count=conversation_count)


def build_run_key(
    *,
    mode: ExtractionMode,
    model: str,
    target_path: str,
    selected_providers: Iterable[Provider | str],
    batches: Sequence[ConversationBatch],
) -> str:
    """Fingerprint of run settings plus the ordered batch list."""
    digest = hashlib.sha1()
    digest.update(str(mode).encode("utf-8"))
    digest.update(model.encode("utf-8"))
    digest.update(target_path.encode("utf-8"))
    digest.update(",".join(canonical_providers(selected_providers)).encode("utf-8"))
    digest.update(str(len(batches)).encode("utf-8"))
    for batch in batches:
        digest.update(batch.id.encode("utf-8"))
    return digest.hexdigest()
