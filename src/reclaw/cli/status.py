"""Summaries of an on-disk run state for ``reclaw status``."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError

from reclaw.core.timestamps import format_iso, parse_timestamp
from reclaw.extract.aggregate import MEMORY_FOLDER
from reclaw.extract.journal import JOURNAL_FOLDER
from reclaw.storage.models import ALL_PROVIDERS, PROVIDER_LABELS, CamelModel, ExtractionMode, Provider

STALE_AFTER = timedelta(days=14)
_INVALID_TIMESTAMP = ("invalid", "Invalid date")


class StatusTimestamp(CamelModel):
    iso: str
    local: str


class StateFileStatus(CamelModel):
    path: str
    exists: bool = False
    size_bytes: int | None = None
    modified_at: StatusTimestamp | None = None
    parse_error: str | None = None


class StatusMetrics(CamelModel):
    completed_batches: int = 0
    completed_conversations: int = 0
    provider_conversation_counts: dict[Provider, int] = Field(default_factory=dict)
    provider_batch_counts: dict[Provider, int] = Field(default_factory=dict)
    earliest_batch_date: str | None = None
    latest_batch_date: str | None = None


class StatusPaths(CamelModel):
    target_path: str
    target_path_exists: bool
    output_dir_path: str
    output_dir_exists: bool


class StateSnapshot(CamelModel):
    version: Literal[1] = 1
    run_key: str
    mode: ExtractionMode
    model: str
    created_at: StatusTimestamp
    updated_at: StatusTimestamp
    paths: StatusPaths
    metrics: StatusMetrics


class StatusReport(CamelModel):
    checked_at: StatusTimestamp
    state_file: StateFileStatus
    state: StateSnapshot | None = None
    notes: list[str] = Field(default_factory=list)


class _StateHeader(CamelModel):
    """Top-level state fields; batch records stay raw so partial records still count."""

    version: Literal[1]
    run_key: str
    mode: ExtractionMode
    model: str
    target_path: str
    created_at: str
    updated_at: str
    completed: dict[str, Any]


def status_timestamp(moment: datetime | None) -> StatusTimestamp:
    if moment is None:
        iso, local = _INVALID_TIMESTAMP
        return StatusTimestamp(iso=iso, local=local)
    return StatusTimestamp(iso=format_iso(moment), local=moment.astimezone().strftime("%Y-%m-%d %H:%M:%S"))


def build_status_report(state_path: Path, now: datetime | None = None) -> StatusReport:
    now = now or datetime.now(UTC)
    report = StatusReport(checked_at=status_timestamp(now), state_file=StateFileStatus(path=str(state_path)))

    try:
        stats = state_path.stat()
    except FileNotFoundError:
        stats = None
    except OSError as exc:
        stats = None
        report.notes.append(f"Could not stat state file: {exc}")

    if stats is None:
        report.notes.append("No state file found yet. Run reclaw extraction once to initialize resumable state.")
        return report

    report.state_file.exists = True
    report.state_file.size_bytes = stats.st_size
    report.state_file.modified_at = status_timestamp(datetime.fromtimestamp(stats.st_mtime, UTC))

    try:
        raw = state_path.read_text(encoding="utf-8")
    except OSError as exc:
        report.notes.append(f"Could not read state file: {exc}")
        return report

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        report.state_file.parse_error = f"Invalid JSON: {exc}"
        report.notes.append(f"State file is not valid JSON. {report.state_file.parse_error}")
        return report

    try:
        header = _StateHeader.model_validate(payload)
    except ValidationError:
        report.state_file.parse_error = "JSON shape does not match reclaw state schema."
        report.notes.append("State file JSON schema is invalid for reclaw v1 state.")
        return report

    target_path = Path(header.target_path)
    folder = MEMORY_FOLDER if header.mode == ExtractionMode.OPENCLAW else JOURNAL_FOLDER
    output_dir = target_path / folder
    paths = StatusPaths(
        target_path=header.target_path,
        target_path_exists=target_path.exists(),
        output_dir_path=str(output_dir),
        output_dir_exists=output_dir.exists(),
    )
    if not paths.target_path_exists:
        report.notes.append(f"Target path does not exist: {header.target_path}")
    if not paths.output_dir_exists:
        report.notes.append(f"Expected output directory is missing: {output_dir}")

    updated_at = parse_timestamp(header.updated_at)
    report.state = StateSnapshot(
        run_key=header.run_key,
        mode=header.mode,
        model=header.model,
        created_at=status_timestamp(parse_timestamp(header.created_at)),
        updated_at=status_timestamp(updated_at),
        paths=paths,
        metrics=summarize_completed(header.completed),
    )

    if report.state.metrics.completed_batches == 0:
        report.notes.append("No completed batches are recorded in state yet.")
    if updated_at is not None and now - updated_at > STALE_AFTER:
        report.notes.append("State appears stale (last update is older than 14 days).")
    report.notes.append(
        "Pending/failed batch counts are not derivable from state alone without replaying the current extraction plan."
    )
    return report


def summarize_completed(completed: dict[str, Any]) -> StatusMetrics:
    metrics = StatusMetrics(
        completed_batches=len(completed),
        provider_conversation_counts={provider: 0 for provider in ALL_PROVIDERS},
        provider_batch_counts={provider: 0 for provider in ALL_PROVIDERS},
    )
    dates: list[str] = []

    for record in completed.values():
        if not isinstance(record, dict):
            continue

        count = _conversation_count(record)
        metrics.completed_conversations += count

        providers = _providers(record.get("providers"))
        for provider in providers:
            metrics.provider_batch_counts[provider] += 1

        refs = record.get("conversationRefs")
        if isinstance(refs, list) and refs:
            for ref in refs:
                if not isinstance(ref, dict):
                    continue
                provider = _provider(ref.get("provider"))
                if provider is not None:
                    metrics.provider_conversation_counts[provider] += 1
        elif providers:
            # Older records lack refs; spread the count across the batch providers.
            share, remainder = divmod(count, len(providers))
            for index, provider in enumerate(providers):
                metrics.provider_conversation_counts[provider] += share + (1 if index < remainder else 0)

        date = record.get("date")
        if isinstance(date, str) and date:
            dates.append(date)

    if dates:
        dates.sort()
        metrics.earliest_batch_date = dates[0]
        metrics.latest_batch_date = dates[-1]
    return metrics


def _conversation_count(record: dict[str, Any]) -> int:
    count = record.get("conversationCount")
    if isinstance(count, int | float) and not isinstance(count, bool) and int(count) > 0:
        return int(count)
    ids = record.get("conversationIds")
    return len(ids) if isinstance(ids, list) else 0


def _provider(value: Any) -> Provider | None:
    try:
        return Provider(value)
    except ValueError:
        return None


def _providers(values: Any) -> list[Provider]:
    if not isinstance(values, list):
        return []
    providers: list[Provider] = []
    for value in values:
        provider = _provider(value)
        if provider is not None and provider not in providers:
            providers.append(provider)
    return providers


def render_status_json(report: StatusReport) -> str:
    return json.dumps(report.to_json_dict(), indent=2)


def render_status_text(report: StatusReport) -> str:
    lines = [
        "Reclaw - Status check",
        f"- Checked: {report.checked_at.local} ({report.checked_at.iso})",
        f"- State file: {report.state_file.path} ({'present' if report.state_file.exists else 'missing'})",
    ]
    if report.state_file.size_bytes is not None:
        lines.append(f"- State size: {report.state_file.size_bytes} bytes")
    if report.state_file.modified_at is not None:
        modified = report.state_file.modified_at
        lines.append(f"- State modified: {modified.local} ({modified.iso})")
    if report.state_file.parse_error:
        lines.append(f"- State parse error: {report.state_file.parse_error}")

    state = report.state
    if state is not None:
        metrics = state.metrics
        paths = state.paths
        lines.extend(
            [
                f"- Mode: {state.mode}",
                f"- Model: {state.model}",
                f"- Run key: {state.run_key}",
                f"- Created: {state.created_at.local} ({state.created_at.iso})",
                f"- Updated: {state.updated_at.local} ({state.updated_at.iso})",
                f"- Target path: {paths.target_path} ({'exists' if paths.target_path_exists else 'missing'})",
                f"- Output dir: {paths.output_dir_path} ({'exists' if paths.output_dir_exists else 'missing'})",
                f"- Completed batches: {metrics.completed_batches}",
                f"- Completed conversations: {metrics.completed_conversations}",
                "- Provider conversations: "
                + ", ".join(
                    f"{PROVIDER_LABELS[provider]} {metrics.provider_conversation_counts.get(provider, 0)}"
                    for provider in ALL_PROVIDERS
                ),
                "- Provider batches: "
                + ", ".join(
                    f"{PROVIDER_LABELS[provider]} {metrics.provider_batch_counts.get(provider, 0)}"
                    for provider in ALL_PROVIDERS
                ),
            ]
        )
        if metrics.earliest_batch_date and metrics.latest_batch_date:
            lines.append(f"- Batch date range: {metrics.earliest_batch_date} -> {metrics.latest_batch_date}")
        else:
            lines.append("- Batch date range: none")

    if report.notes:
        lines.append("- Notes:")
        lines.extend(f"  - {note}" for note in report.notes)
    return "\n".join(lines)
