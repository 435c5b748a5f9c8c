from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.theme import Theme

from reclaw.cli.status import build_status_report, render_status_json, render_status_text
from reclaw.core.config import DEFAULT_CONFIG_PATH, expand_path, load_config
from reclaw.core.errors import ReclawError
from reclaw.core.runner import ProcessRunner, SubprocessRunner
from reclaw.extract.pipeline import (
    ExtractionPipeline,
    ExtractionPipelineResult,
    PipelineOptions,
    selected_provider_conversations,
)
from reclaw.extract.planner import canonical_providers, plan_batches
from reclaw.ingest.conversations import load_conversations
from reclaw.ingest.discovery import prepare_input_sources
from reclaw.ingest.sessions import LegacyProviderImport, LegacySessionImporter, LegacySessionImportResult
from reclaw.scheduler.openclaw import OpenClawClient, default_model, ensure_concurrency_config, resolve_model
from reclaw.storage.models import (
    PROVIDER_LABELS,
    BackupMode,
    ExtractionMode,
    NormalizedConversation,
    Provider,
    ReclawConfig,
    SessionImportMode,
)

app = typer.Typer(help="Reclaw - migrate chat history into OpenClaw memory or a Zettelclaw vault")

console = Console(
    theme=Theme(
        {
            "error": "bright_red",
            "success": "bright_green",
            "warning": "bright_yellow",
            "info": "bright_cyan",
            "dim": "dim white",
            "accent": "cyan",
            "table_header": "cyan",
        }
    )
)

DEFAULT_ZETTELCLAW_VAULT_PATH = "~/zettelclaw"
MAX_LISTED_ERRORS = 8
T = TypeVar("T")


def get_runner() -> ProcessRunner:
    return SubprocessRunner()


def get_config(config_path: Path | None) -> ReclawConfig:
    try:
        return load_config(config_path)
    except (ReclawError, OSError, yaml.YAMLError, ValidationError) as exc:
        console.print(f"[error]Invalid configuration ({config_path or DEFAULT_CONFIG_PATH}): {escape(str(exc))}[/error]")
        raise typer.Exit(1) from None


def get_client(config: ReclawConfig) -> OpenClawClient:
    return OpenClawClient.from_config(config.scheduler, get_runner())


def fail(message: str) -> NoReturn:
    console.print(f"[error]{escape(message)}[/error]")
    raise typer.Exit(1)


def run_with_spinner(description: str, action: Callable[[], T]) -> T:
    """Run a blocking action with a transient spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        return action()


def parse_providers(values: Sequence[str] | None) -> list[Provider]:
    providers: list[Provider] = []
    for value in values or []:
        try:
            providers.append(Provider(value.strip().lower()))
        except ValueError:
            valid = ", ".join(provider.value for provider in Provider)
            fail(f"Unknown provider '{value}'. Valid providers: {valid}")
    return canonical_providers(providers)


def load_input(
    input_path: Path,
    providers: Sequence[Provider],
) -> tuple[dict[Provider, list[NormalizedConversation]], list[Provider]]:
    """Load normalized conversations and keep the selected providers that have any."""
    if not input_path.exists():
        fail(f"Input path does not exist: {input_path}")
    try:
        conversations = load_conversations(input_path)
    except ReclawError as exc:
        fail(str(exc))

    grouped = selected_provider_conversations(conversations, providers or None)
    selected = canonical_providers([provider for provider, items in grouped.items() if items])
    if not selected:
        fail(f"No conversations found in {input_path}.")

    for provider in selected:
        items = grouped[provider]
        messages = sum(conversation.message_count for conversation in items)
        console.print(
            f"[success]Found {len(items)} conversations from {PROVIDER_LABELS[provider]} ({messages} messages total)[/success]"
        )
    return grouped, selected


def describe_progress(event: dict[str, Any]) -> str | None:
    name = event.get("event")
    if name == "pipeline_planned":
        return (
            f"Planned {event['total_batches']} batch(es), {event['skipped_batches']} already complete, "
            f"{event['pending_batches']} pending"
        )
    if name in {"batch_started", "batch_completed", "batch_failed"}:
        return (
            f"Batches {event['settled_batches']}/{event['pending_batches']} settled "
            f"({event['failed_batches']} failed, {event['active_workers']} running) "
            f"- conversations {event['settled_conversations']}/{event['pending_conversations']}"
        )
    if name == "artifacts_started":
        return f"Writing documents from {event['result_count']} batch result(s)"
    if name == "main_docs_started":
        return "Updating MEMORY.md and USER.md via main agent"
    return None


def resolve_legacy_mode(requested: SessionImportMode | None, config: ReclawConfig) -> SessionImportMode:
    return requested or config.sessions.mode or SessionImportMode.ON


def print_legacy_errors(result: LegacySessionImportResult) -> None:
    for failure in result.errors[:MAX_LISTED_ERRORS]:
        console.print(
            f"[error]Legacy import failed for {PROVIDER_LABELS[failure.provider]} "
            f"'{escape(failure.conversation_title)}' ({escape(failure.conversation_id)}): {escape(failure.reason)}[/error]"
        )
    if len(result.errors) > MAX_LISTED_ERRORS:
        console.print(f"[error]...and {len(result.errors) - MAX_LISTED_ERRORS} more legacy import error(s).[/error]")


def import_legacy(
    client: OpenClawClient,
    workspace_path: Path,
    input_path: Path,
    grouped: dict[Provider, list[NormalizedConversation]],
    selected: Sequence[Provider],
) -> LegacySessionImportResult:
    importer = LegacySessionImporter(client)
    return run_with_spinner(
        "Importing legacy sessions into OpenClaw history...",
        lambda: importer.import_sessions(
            workspace_path,
            [
                LegacyProviderImport(provider=provider, source_path=input_path, conversations=grouped[provider])
                for provider in selected
            ],
        ),
    )


def format_legacy_counts(result: LegacySessionImportResult) -> str:
    return (
        f"{result.imported} imported, {result.updated} updated, "
        f"{result.skipped} skipped, {result.failed} failed"
    )


@app.command()
def run(
    input_path: Path = typer.Option(..., "--input", "-i", help="Normalized conversations file or directory"),
    mode: ExtractionMode | None = typer.Option(None, "--mode", "-m", help="Output mode: openclaw or zettelclaw"),
    model: str | None = typer.Option(None, "--model", help="Model key, alias or name for subagent jobs"),
    target_path: Path | None = typer.Option(None, "--target-path", help="OpenClaw workspace or Zettelclaw vault"),
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        help="OpenClaw workspace holding MEMORY.md/USER.md and session history",
    ),
    state_path: Path | None = typer.Option(None, "--state-path", help="Resumable state file"),
    provider: list[str] | None = typer.Option(None, "--provider", "-p", help="Only process these providers"),
    parallel_jobs: int | None = typer.Option(None, "--parallel-jobs", "-j", min=1, help="Concurrent subagent jobs"),
    timestamped_backups: bool = typer.Option(
        False,
        "--timestamped-backups",
        help="Keep every MEMORY.md/USER.md backup instead of overwriting one .bak",
    ),
    no_session_footers: bool = typer.Option(
        False,
        "--no-session-footers",
        help="Omit the Sessions footer from written documents",
    ),
    legacy_sessions: SessionImportMode | None = typer.Option(
        None,
        "--legacy-sessions",
        help="Import conversations into OpenClaw session history: on, off or required",
    ),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Extract memory from chat history and merge it into the target documents."""
    config = get_config(config_path)
    extraction = config.extraction

    resolved_mode = mode or (ExtractionMode.OPENCLAW if workspace else extraction.mode)
    if resolved_mode == ExtractionMode.OPENCLAW and workspace and target_path:
        if expand_path(workspace) != expand_path(target_path):
            fail("Cannot combine --workspace and --target-path with different values.")

    if resolved_mode == ExtractionMode.OPENCLAW:
        raw_target = workspace or target_path or extraction.target_path or config.sessions.workspace_path
        resolved_target = expand_path(raw_target)
        memory_workspace = resolved_target
    else:
        resolved_target = expand_path(target_path or extraction.target_path or DEFAULT_ZETTELCLAW_VAULT_PATH)
        memory_workspace = expand_path(
            workspace or extraction.memory_workspace_path or config.sessions.workspace_path
        )

    resolved_state = expand_path(state_path or extraction.state_path)
    jobs = parallel_jobs or extraction.parallel_jobs
    backup_mode = BackupMode.TIMESTAMPED if timestamped_backups else extraction.backup_mode
    legacy_mode = resolve_legacy_mode(legacy_sessions, config)

    grouped, selected = load_input(input_path, parse_providers(provider))
    client = get_client(config)

    try:
        available_models = run_with_spinner("Loading available models...", client.list_models)
    except ReclawError as exc:
        fail(f"Could not load models: {exc}")
    requested_model = model or extraction.model
    chosen = resolve_model(available_models, requested_model) if requested_model else default_model(available_models)
    if chosen is None:
        fail(f"Model '{requested_model}' is not available." if requested_model else "No models available.")
    console.print(f"[info]Using model: {escape(chosen.label)}[/info]")

    patch = ensure_concurrency_config(expand_path(config.scheduler.openclaw_dir), jobs)
    if patch.message:
        console.print(f"[warning]{escape(patch.message)}[/warning]")
    elif patch.changed:
        console.print(
            f"[dim]Raised OpenClaw concurrency to cron={patch.cron_max_concurrent_runs}, "
            f"agents={patch.agent_max_concurrent}[/dim]"
        )

    legacy_result: LegacySessionImportResult | None = None
    if legacy_mode != SessionImportMode.OFF:
        try:
            legacy_result = import_legacy(client, memory_workspace, expand_path(input_path), grouped, selected)
        except ReclawError as exc:
            if legacy_mode == SessionImportMode.REQUIRED:
                fail(f"Legacy session import failed (--legacy-sessions=required): {exc}")
            console.print(f"[error]Legacy session import failed (continuing): {escape(str(exc))}[/error]")
        else:
            console.print(f"[success]Legacy sessions synced ({format_legacy_counts(legacy_result)})[/success]")
            if legacy_result.failed:
                print_legacy_errors(legacy_result)
                if legacy_mode == SessionImportMode.REQUIRED:
                    fail(
                        f"Legacy session import failed for {legacy_result.failed}/{legacy_result.attempted} sessions."
                    )

    options = PipelineOptions(
        mode=resolved_mode,
        model=chosen.key,
        target_path=resolved_target,
        memory_workspace_path=memory_workspace,
        state_path=resolved_state,
        selected_providers=selected,
        parallel_jobs=jobs,
        max_prompt_chars=extraction.max_prompt_chars,
        backup_mode=backup_mode,
        include_session_footers=extraction.include_session_footers and not no_session_footers,
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Running extraction pipeline...", total=None)

        def on_progress(event: dict[str, Any]) -> None:
            description = describe_progress(event)
            if description:
                progress.update(task, description=description)

        pipeline = ExtractionPipeline(client, progress_callback=on_progress)
        try:
            result = asyncio.run(pipeline.run(grouped, options))
        except ReclawError as exc:
            fail(f"Extraction failed: {exc}")

    print_run_summary(result, legacy_result)


def print_run_summary(result: ExtractionPipelineResult, legacy_result: LegacySessionImportResult | None) -> None:
    insights = result.artifacts.insights
    lines = [
        "",
        f"Batches processed: {result.processed_batches}",
        f"Batches failed:    {result.failed_batches}",
        f"Resumed/skipped:   {result.skipped_batches}",
        f"Total batches:     {result.total_batches}",
        f"Output files:      {len(result.artifacts.output_files)}",
        "",
        f"Summary: {escape(clip(insights.summary or 'No summary captured.', 220))}",
        (
            f"Insight counts: projects={len(insights.projects)}, interests={len(insights.interests)}, "
            f"facts={len(insights.facts)}, preferences={len(insights.preferences)}, people={len(insights.people)}"
        ),
        f"Updated: {escape(result.artifacts.memory_file_path)}",
        f"Updated: {escape(result.artifacts.user_file_path)}",
        f"State: {escape(str(result.state_path))}",
    ]
    if legacy_result is not None:
        lines.append(
            f"Legacy sessions: {format_legacy_counts(legacy_result)} ({escape(legacy_result.session_store_path)})"
        )
    else:
        lines.append("Legacy sessions: disabled")

    if result.failed_batch_errors:
        lines.append("")
        lines.append(f"[warning]Failed batches: {len(result.failed_batch_errors)}[/warning]")
        for error in result.failed_batch_errors[:MAX_LISTED_ERRORS]:
            lines.append(f"  [dim]- {escape(error)}[/dim]")
        if len(result.failed_batch_errors) > MAX_LISTED_ERRORS:
            lines.append(f"  [dim]... and {len(result.failed_batch_errors) - MAX_LISTED_ERRORS} more[/dim]")
    lines.append("")

    if result.failed_batches:
        title = "[warning]Extraction Complete (with failures)[/warning]"
    else:
        title = "[success]✓ Extraction Complete[/success]"
    console.print(Panel.fit("\n".join(lines), title=title))


def clip(text: str, limit: int) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3].rstrip() + "..."


@app.command()
def plan(
    input_path: Path = typer.Option(..., "--input", "-i", help="Normalized conversations file or directory"),
    provider: list[str] | None = typer.Option(None, "--provider", "-p", help="Only plan these providers"),
    state_path: Path | None = typer.Option(None, "--state-path", help="Resumable state file"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Show the day batches a run would schedule, without scheduling anything."""
    config = get_config(config_path)
    extraction = config.extraction
    grouped, selected = load_input(input_path, parse_providers(provider))
    batch_plan = plan_batches(grouped, selected)
    resolved_state = expand_path(state_path or extraction.state_path)

    table = Table(title="Extraction Plan")
    table.add_column("Date", style="table_header")
    table.add_column("Providers")
    table.add_column("Conversations", justify="right")
    table.add_column("Batch ID", style="dim")
    for batch in batch_plan.batches:
        table.add_row(
            batch.date,
            ", ".join(PROVIDER_LABELS[item] for item in batch.providers),
            str(len(batch.conversations)),
            batch.id,
        )
    console.print(table)

    lines = [
        f"Mode: {extraction.mode}",
        f"Providers: {', '.join(PROVIDER_LABELS[item] for item in selected)}",
        f"Conversations: {batch_plan.conversation_count}",
        f"Batches: {len(batch_plan.batches)}",
        f"Parallel jobs: {extraction.parallel_jobs}",
        f"Backup mode: {extraction.backup_mode}",
        f"State: {escape(str(resolved_state))} ({'present' if resolved_state.exists() else 'missing'})",
        f"Legacy sessions: {resolve_legacy_mode(None, config)}",
    ]
    console.print(Panel.fit("\n".join(lines), title="[info]Dry Run[/info]"))


@app.command()
def status(
    state_path: Path | None = typer.Option(None, "--state-path", help="Resumable state file"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Summarize the resumable state file."""
    config = get_config(config_path)
    report = build_status_report(expand_path(state_path or config.extraction.state_path))
    if as_json:
        typer.echo(render_status_json(report))
        return
    console.print(escape(render_status_text(report)))


@app.command("import-sessions")
def import_sessions(
    input_path: Path = typer.Option(..., "--input", "-i", help="Normalized conversations file or directory"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="OpenClaw workspace to import into"),
    provider: list[str] | None = typer.Option(None, "--provider", "-p", help="Only import these providers"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Import conversations into the OpenClaw agent's session history."""
    config = get_config(config_path)
    grouped, selected = load_input(input_path, parse_providers(provider))
    workspace_path = expand_path(workspace or config.sessions.workspace_path)

    try:
        result = import_legacy(get_client(config), workspace_path, expand_path(input_path), grouped, selected)
    except ReclawError as exc:
        fail(f"Legacy session import failed: {exc}")

    lines = [
        f"Agent: {escape(result.agent_id)}",
        f"Session store: {escape(result.session_store_path)}",
        f"Attempted: {result.attempted}",
        f"Imported:  {result.imported}",
        f"Updated:   {result.updated}",
        f"Skipped:   {result.skipped}",
        f"Failed:    {result.failed}",
    ]
    title = "[success]✓ Sessions Imported[/success]" if not result.failed else "[warning]Sessions Imported (with failures)[/warning]"
    console.print(Panel.fit("\n".join(lines), title=title))
    if result.failed:
        print_legacy_errors(result)
        raise typer.Exit(1)


@app.command()
def models(
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """List models reported by the OpenClaw host."""
    config = get_config(config_path)
    try:
        available = run_with_spinner("Loading available models...", get_client(config).list_models)
    except ReclawError as exc:
        fail(f"Could not load models: {exc}")

    table = Table(title="Available Models")
    table.add_column("Key", style="table_header")
    table.add_column("Name")
    table.add_column("Alias")
    table.add_column("Default", justify="center")
    for item in available:
        table.add_row(item.key, item.name, item.alias or "-", "✓" if item.is_default else "")
    console.print(table)


@app.command()
def discover(
    input_path: Path = typer.Option(..., "--input", "-i", help="Export directory, conversations.json or zip archive"),
):
    """Detect which provider exports an input path contains."""
    if not input_path.exists():
        fail(f"Input path does not exist: {input_path}")

    try:
        prepared = prepare_input_sources(expand_path(input_path), get_runner())
    except ReclawError as exc:
        fail(str(exc))

    try:
        table = Table(title="Detected Exports")
        table.add_column("Provider", style="table_header")
        table.add_column("Detected", justify="center")
        table.add_column("Candidates")
        for item in Provider:
            candidates = prepared.parse_candidates.get(item, [])
            table.add_row(
                PROVIDER_LABELS[item],
                "✓" if item in prepared.detected_providers else "-",
                "\n".join(escape(str(path)) for path in candidates),
            )
        console.print(table)

        if prepared.extracted_archive_count:
            console.print(f"[info]Inspected {prepared.extracted_archive_count} archive(s) by extracting them.[/info]")
        for warning in prepared.warnings:
            console.print(f"[warning]{escape(warning)}[/warning]")
        if not prepared.detected_providers:
            console.print("[warning]No provider exports detected.[/warning]")
    finally:
        if prepared.extraction_root is not None:
            shutil.rmtree(prepared.extraction_root, ignore_errors=True)


if __name__ == "__main__":
    app()
