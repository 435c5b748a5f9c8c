from __future__ import annotations

import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from reclaw.core.collections import unique_strings
from reclaw.extract.journal import write_journal_artifacts
from reclaw.extract.main_docs import MainDocRequest, update_main_docs
from reclaw.extract.session_refs import collect_session_refs, summarize_providers
from reclaw.extract.signals import extract_signals
from reclaw.scheduler.openclaw import OpenClawClient
from reclaw.storage.models import (
    AggregatedInsights,
    BackupMode,
    BatchExtractionResult,
    ExtractionArtifacts,
    ExtractionMode,
)

MEMORY_FOLDER = "memory"
MAX_SUMMARY_PARTS = 8


@dataclass(frozen=True)
class ArtifactOptions:
    mode: ExtractionMode
    target_path: Path
    memory_workspace_path: Path
    model: str
    backup_mode: BackupMode = BackupMode.OVERWRITE
    include_session_footers: bool = True


async def write_extraction_artifacts(
    results: Sequence[BatchExtractionResult],
    options: ArtifactOptions,
    client: OpenClawClient,
    progress_callback: Callable[[dict[str, Any]], None] | None = None,
) -> ExtractionArtifacts:
    """Write per-date documents, back up MEMORY.md/USER.md and run the main-doc update."""
    insights = aggregate_insights(results)
    backup_timestamp = format_backup_timestamp(datetime.now()) if options.backup_mode == BackupMode.TIMESTAMPED else None

    if options.mode == ExtractionMode.OPENCLAW:
        output_files = write_openclaw_memory_files(
            results, options.target_path, include_session_footers=options.include_session_footers
        )
    else:
        output_files = write_journal_artifacts(
            results, options.target_path, include_session_footers=options.include_session_footers
        )

    memory_file = options.memory_workspace_path / "MEMORY.md"
    user_file = options.memory_workspace_path / "USER.md"
    backup_file_if_exists(memory_file, options.backup_mode, backup_timestamp)
    backup_file_if_exists(user_file, options.backup_mode, backup_timestamp)

    if progress_callback:
        progress_callback({"event": "main_docs_started", "memory_file": str(memory_file), "user_file": str(user_file)})

    await update_main_docs(
        client,
        MainDocRequest(
            mode=options.mode,
            target_path=str(options.target_path),
            memory_workspace_path=str(options.memory_workspace_path),
            model=options.model,
            insights=insights,
            results=results,
            memory_file=memory_file,
            user_file=user_file,
        ),
    )

    return ExtractionArtifacts(
        output_files=output_files,
        memory_file_path=str(memory_file),
        user_file_path=str(user_file),
        insights=insights,
    )


def aggregate_insights(results: Sequence[BatchExtractionResult]) -> AggregatedInsights:
    summaries: list[str] = []
    buckets: dict[str, list[str]] = {
        "interests": [],
        "projects": [],
        "facts": [],
        "preferences": [],
        "people": [],
        "decisions": [],
    }

    for result in results:
        summary = result.extraction.summary.strip()
        if summary:
            summaries.append(summary)
        signals = extract_signals(summary)
        for key, values in buckets.items():
            values.extend(getattr(signals, key))

    return AggregatedInsights(
        summary=" ".join(unique_strings(summaries)[:MAX_SUMMARY_PARTS]),
        **{key: unique_strings(values) for key, values in buckets.items()},
    )


def write_openclaw_memory_files(
    results: Sequence[BatchExtractionResult],
    target_path: Path,
    *,
    include_session_footers: bool = True,
) -> list[str]:
    memory_dir = target_path / MEMORY_FOLDER
    memory_dir.mkdir(parents=True, exist_ok=True)

    by_date: dict[str, list[BatchExtractionResult]] = {}
    for result in results:
        by_date.setdefault(result.date, []).append(result)

    output_files: list[str] = []
    for date, group in by_date.items():
        file_path = memory_dir / f"{date}.md"
        file_path.write_text(build_daily_memory_content(date, group, include_session_footers), encoding="utf-8")
        output_files.append(str(file_path))
    return sorted(output_files)


def build_daily_memory_content(
    date: str,
    results: Sequence[BatchExtractionResult],
    include_session_footers: bool,
) -> str:
    decisions: list[str] = []
    facts: list[str] = []
    interests: list[str] = []
    todo: list[str] = []
    for result in results:
        signals = extract_signals(result.extraction.summary)
        decisions.extend(signals.decisions)
        facts.extend([*signals.facts, *signals.projects, *signals.preferences, *signals.people])
        interests.extend(signals.interests)
        todo.extend(signals.todo)

    lines = [f"# Reclaw Memory Import {date}", "", f"Source providers: {summarize_providers(results)}", ""]
    for heading, values in (
        ("## Decisions", decisions),
        ("## Facts", facts),
        ("## Interests", interests),
        ("## Open", todo),
    ):
        unique = unique_strings(values)
        if not unique:
            continue
        lines.append(heading)
        lines.extend(f"- {value}" for value in unique)
        lines.append("")

    if include_session_footers:
        lines.extend(["---", "", "## Sessions"])
        refs = collect_session_refs(results)
        if refs:
            lines.extend(f"- {ref}" for ref in refs)
        else:
            lines.append("- n/a")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def format_backup_timestamp(moment: datetime) -> str:
    """``YYYYMMDD-HHMMSS-mmm`` in local time."""
    return moment.strftime("%Y%m%d-%H%M%S-") + f"{moment.microsecond // 1000:03d}"


def build_backup_path(path: Path, mode: BackupMode, timestamp: str | None = None) -> Path:
    if mode == BackupMode.TIMESTAMPED:
        suffix = timestamp or format_backup_timestamp(datetime.now())
        return path.with_name(f"{path.name}.bak.{suffix}")
    return path.with_name(f"{path.name}.bak")


def backup_file_if_exists(path: Path, mode: BackupMode, timestamp: str | None = None) -> Path | None:
    """Copy ``path`` next to itself before it is rewritten. Missing files are skipped."""
    backup_path = build_backup_path(path, mode, timestamp)
    try:
        shutil.copyfile(path, backup_path)
    except FileNotFoundError:
        return None
    return backup_path
