from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reclaw.core.concurrency import run_with_concurrency
from reclaw.core.errors import BatchExtractionError, ExtractionPipelineError, ReclawError
from reclaw.core.timestamps import utc_now_iso
from reclaw.extract.aggregate import ArtifactOptions, write_extraction_artifacts
from reclaw.extract.planner import build_run_key, canonical_providers, plan_batches
from reclaw.extract.prompt import DEFAULT_MAX_PROMPT_CHARS, build_prompt, parse_response
from reclaw.scheduler.base import OpenClawError
from reclaw.scheduler.openclaw import DEFAULT_SESSION_NAME, OpenClawClient
from reclaw.storage.models import (
    BackupMode,
    BatchConversationRef,
    BatchExtractionResult,
    ConversationBatch,
    ExtractionArtifacts,
    ExtractionMode,
    NormalizedConversation,
    Provider,
    ReclawState,
)
from reclaw.storage.state import StateWriter, load_state


@dataclass(frozen=True)
class PipelineOptions:
    mode: ExtractionMode
    model: str
    target_path: Path
    memory_workspace_path: Path
    state_path: Path
    selected_providers: Sequence[Provider]
    parallel_jobs: int = 5
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS
    backup_mode: BackupMode = BackupMode.OVERWRITE
    include_session_footers: bool = True


@dataclass
class ExtractionPipelineResult:
    total_batches: int
    processed_batches: int
    skipped_batches: int
    failed_batches: int
    state_path: Path
    artifacts: ExtractionArtifacts
    failed_batch_errors: list[str] = field(default_factory=list)


@dataclass
class _Progress:
    pending_batches: int
    pending_conversations: int
    settled_batches: int = 0
    settled_conversations: int = 0
    failed_batches: int = 0
    active_workers: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "settled_batches": self.settled_batches,
            "pending_batches": self.pending_batches,
            "settled_conversations": self.settled_conversations,
            "pending_conversations": self.pending_conversations,
            "failed_batches": self.failed_batches,
            "active_workers": self.active_workers,
        }


class ExtractionPipeline:
    """Plan day batches, extract pending ones in parallel and write the resulting documents.

    Progress survives interruption: each completed batch is saved to the state
    file as soon as it finishes, and a rerun with the same run key skips it.
    """

    def __init__(
        self,
        client: OpenClawClient,
        progress_callback: Callable[[dict[str, Any]], None] | None = None,
    ):
        self.client = client
        self.progress_callback = progress_callback

    async def run(
        self,
        provider_conversations: Mapping[Provider, Sequence[NormalizedConversation]],
        options: PipelineOptions,
    ) -> ExtractionPipelineResult:
        plan = plan_batches(provider_conversations, options.selected_providers)
        run_key = build_run_key(
            mode=options.mode,
            model=options.model,
            target_path=str(options.target_path),
            selected_providers=options.selected_providers,
            batches=plan.batches,
        )
        state = self._prepare_state(run_key, options)

        pending = [batch for batch in plan.batches if batch.id not in state.completed]
        skipped_batches = len(plan.batches) - len(pending)
        progress = _Progress(
            pending_batches=len(pending),
            pending_conversations=sum(len(batch.conversations) for batch in pending),
        )
        failed_batch_errors: list[str] = []
        processed_batches = 0

        self._emit_progress(
            {
                "event": "pipeline_planned",
                "total_batches": len(plan.batches),
                "skipped_batches": skipped_batches,
                "conversation_count": plan.conversation_count,
                **progress.snapshot(),
            }
        )

        async with StateWriter(options.state_path) as writer:
            await writer.save(state)

            async def process(batch: ConversationBatch, _index: int) -> None:
                nonlocal processed_batches
                progress.active_workers += 1
                self._emit_progress(
                    {
                        "event": "batch_started",
                        "batch_id": batch.id,
                        "date": batch.date,
                        "conversation_count": len(batch.conversations),
                        **progress.snapshot(),
                    }
                )
                event: dict[str, Any] = {"batch_id": batch.id, "date": batch.date}
                try:
                    result = await self.extract_batch(batch, options)
                    state.completed[batch.id] = result
                    state.updated_at = utc_now_iso()
                    await writer.save(state)
                except (ReclawError, OSError) as exc:
                    # An unsaved result must not reach the written documents.
                    state.completed.pop(batch.id, None)
                    message = str(exc)
                    if not isinstance(exc, BatchExtractionError):
                        message = str(BatchExtractionError(batch.id, message))
                    failed_batch_errors.append(message)
                    progress.failed_batches += 1
                    event.update(event="batch_failed", error=message)
                else:
                    processed_batches += 1
                    event.update(event="batch_completed")
                finally:
                    progress.active_workers -= 1
                    progress.settled_batches += 1
                    progress.settled_conversations += len(batch.conversations)

                self._emit_progress({**event, **progress.snapshot()})

            await run_with_concurrency(pending, options.parallel_jobs, process)

        results = [state.completed[batch.id] for batch in plan.batches if batch.id in state.completed]
        if not results:
            message = "Extraction produced no successful batch results."
            if failed_batch_errors:
                message = f"{message} First error: {failed_batch_errors[0]}"
            raise ExtractionPipelineError(message)

        self._emit_progress({"event": "artifacts_started", "result_count": len(results)})
        artifacts = await write_extraction_artifacts(
            results,
            ArtifactOptions(
                mode=options.mode,
                target_path=options.target_path,
                memory_workspace_path=options.memory_workspace_path,
                model=options.model,
                backup_mode=options.backup_mode,
                include_session_footers=options.include_session_footers,
            ),
            self.client,
            progress_callback=self._emit_progress,
        )

        return ExtractionPipelineResult(
            total_batches=len(plan.batches),
            processed_batches=processed_batches,
            skipped_batches=skipped_batches,
            failed_batches=len(failed_batch_errors),
            failed_batch_errors=failed_batch_errors,
            artifacts=artifacts,
            state_path=options.state_path,
        )

    async def extract_batch(self, batch: ConversationBatch, options: PipelineOptions) -> BatchExtractionResult:
        """Run one batch through the subagent and parse its summary."""
        prompt = build_prompt(
            batch,
            mode=options.mode,
            output_path=str(options.target_path),
            memory_workspace_path=str(options.memory_workspace_path),
            max_prompt_chars=options.max_prompt_chars,
        )

        try:
            scheduled = await self.client.schedule(
                prompt,
                model=options.model,
                session_name=DEFAULT_SESSION_NAME,
                timeout_seconds=self.client.job_timeout_seconds,
            )
        except OpenClawError as exc:
            raise BatchExtractionError(batch.id, str(exc)) from exc

        try:
            summary = await self.client.await_result(scheduled.job_id)
        except OpenClawError as exc:
            await self.client.cancel(scheduled.job_id)
            raise BatchExtractionError(batch.id, str(exc)) from exc

        return BatchExtractionResult(
            batch_id=batch.id,
            providers=list(batch.providers),
            date=batch.date,
            conversation_ids=[conversation.id for conversation in batch.conversations],
            conversation_refs=conversation_refs(batch.conversations),
            conversation_count=len(batch.conversations),
            extraction=parse_response(summary),
        )

    def _prepare_state(self, run_key: str, options: PipelineOptions) -> ReclawState:
        existing = load_state(options.state_path)
        if existing is not None and existing.run_key == run_key:
            existing.memory_workspace_path = str(options.memory_workspace_path)
            return existing

        now = utc_now_iso()
        return ReclawState(
            run_key=run_key,
            mode=options.mode,
            model=options.model,
            target_path=str(options.target_path),
            memory_workspace_path=str(options.memory_workspace_path),
            created_at=now,
            updated_at=now,
            completed={},
        )

    def _emit_progress(self, payload: dict[str, Any]) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(payload)
        except Exception:  # noqa: BLE001
            return


def conversation_refs(conversations: Sequence[NormalizedConversation]) -> list[BatchConversationRef]:
    """One ref per provider and id, keeping the first timestamp seen."""
    refs: dict[tuple[Provider, str], BatchConversationRef] = {}
    for conversation in conversations:
        key = (conversation.source, conversation.id)
        if key in refs:
            continue
        refs[key] = BatchConversationRef(
            provider=conversation.source,
            id=conversation.id,
            timestamp=conversation.updated_at or conversation.created_at,
        )
    return list(refs.values())


def selected_provider_conversations(
    conversations: Sequence[NormalizedConversation],
    providers: Sequence[Provider] | None = None,
) -> dict[Provider, list[NormalizedConversation]]:
    """Group conversations by provider, keeping only the selected ones."""
    wanted = canonical_providers(providers) if providers else None
    grouped: dict[Provider, list[NormalizedConversation]] = {}
    for conversation in conversations:
        if wanted is not None and conversation.source not in wanted:
            continue
        grouped.setdefault(conversation.source, []).append(conversation)
    return grouped
