from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

from conftest import FakeOpenClaw, make_result

from reclaw.extract.aggregate import (
    ArtifactOptions,
    aggregate_insights,
    backup_file_if_exists,
    build_backup_path,
    build_daily_memory_content,
    format_backup_timestamp,
    write_extraction_artifacts,
)
from reclaw.scheduler.openclaw import OpenClawClient
from reclaw.storage.models import BackupMode, ExtractionMode, Provider


def test_aggregate_insights_merges_signals_and_summaries() -> None:
    results = [
        make_result("b1", summary="Decision: Use uv\nProject: reclaw"),
        make_result("b2", summary="Decision: use uv\nInterest: Bouldering"),
        make_result("b3", summary=""),
    ]

    insights = aggregate_insights(results)

    assert insights.decisions == ["Use uv"]
    assert insights.projects == ["reclaw"]
    assert insights.interests == ["Bouldering"]
    assert insights.summary == "Decision: Use uv\nProject: reclaw Decision: use uv\nInterest: Bouldering"


def test_daily_memory_content_layout() -> None:
    results = [
        make_result(
            "b1",
            date="2026-02-22",
            summary="Decision: Ship v1\nFact: Lives in Berlin\nPerson: Dana\nTodo: Write docs",
            refs=[(Provider.CHATGPT, "c1", "2026-02-22T10:00:00.000Z")],
        )
    ]

    content = build_daily_memory_content("2026-02-22", results, include_session_footers=True)

    assert content == (
        "# Reclaw Memory Import 2026-02-22\n"
        "\n"
        "Source providers: ChatGPT (1)\n"
        "\n"
        "## Decisions\n"
        "- Ship v1\n"
        "\n"
        "## Facts\n"
        "- Lives in Berlin\n"
        "- Dana\n"
        "\n"
        "## Open\n"
        "- Write docs\n"
        "\n"
        "---\n"
        "\n"
        "## Sessions\n"
        "- chatgpt:c1 — 2026-02-22T10:00:00.000Z\n"
    )


def test_daily_memory_content_without_signals_or_footer() -> None:
    content = build_daily_memory_content("2026-02-22", [make_result("b1", summary="")], include_session_footers=False)

    assert content == "# Reclaw Memory Import 2026-02-22\n\nSource providers: ChatGPT (1)\n"


def test_backup_paths() -> None:
    moment = datetime(2026, 2, 22, 9, 5, 7, 42_000)

    assert format_backup_timestamp(moment) == "20260222-090507-042"
    assert build_backup_path(Path("/w/MEMORY.md"), BackupMode.OVERWRITE) == Path("/w/MEMORY.md.bak")
    assert build_backup_path(Path("/w/MEMORY.md"), BackupMode.TIMESTAMPED, "stamp") == Path("/w/MEMORY.md.bak.stamp")


def test_backup_skips_missing_files(tmp_path: Path) -> None:
    assert backup_file_if_exists(tmp_path / "MEMORY.md", BackupMode.OVERWRITE) is None

    (tmp_path / "MEMORY.md").write_text("original")
    backup = backup_file_if_exists(tmp_path / "MEMORY.md", BackupMode.OVERWRITE)

    assert backup == tmp_path / "MEMORY.md.bak"
    assert backup.read_text() == "original"


def test_write_extraction_artifacts_openclaw_mode(tmp_path: Path) -> None:
    fake = FakeOpenClaw()
    client = OpenClawClient(fake, poll_interval=0)
    (tmp_path / "MEMORY.md").write_text("# Memory\n")
    events: list[dict] = []

    artifacts = asyncio.run(
        write_extraction_artifacts(
            [make_result("b1", date="2026-02-22"), make_result("b2", date="2026-02-23")],
            ArtifactOptions(
                mode=ExtractionMode.OPENCLAW,
                target_path=tmp_path,
                memory_workspace_path=tmp_path,
                model="haiku",
            ),
            client,
            progress_callback=events.append,
        )
    )

    assert artifacts.output_files == [
        str(tmp_path / "memory" / "2026-02-22.md"),
        str(tmp_path / "memory" / "2026-02-23.md"),
    ]
    assert (tmp_path / "MEMORY.md.bak").read_text() == "# Memory\n"
    assert not (tmp_path / "USER.md.bak").exists()
    assert "<!-- reclaw-memory:start -->" in (tmp_path / "MEMORY.md").read_text()
    assert artifacts.insights.decisions == ["Use uv for Python projects"]
    assert [event["event"] for event in events] == ["main_docs_started"]
    main_docs_jobs = [job for job in fake.jobs.values() if job["name"] == "reclaw-main-docs"]
    assert len(main_docs_jobs) == 1


def test_write_extraction_artifacts_zettelclaw_mode(tmp_path: Path) -> None:
    vault = tmp_path / "vault"
    workspace = tmp_path / "workspace"
    client = OpenClawClient(FakeOpenClaw(), poll_interval=0)

    artifacts = asyncio.run(
        write_extraction_artifacts(
            [make_result("b1")],
            ArtifactOptions(
                mode=ExtractionMode.ZETTELCLAW,
                target_path=vault,
                memory_workspace_path=workspace,
                model="haiku",
                backup_mode=BackupMode.TIMESTAMPED,
            ),
            client,
        )
    )

    assert artifacts.output_files == [str(vault / "03 Journal" / "2026-01-05.md")]
    assert artifacts.memory_file_path == str(workspace / "MEMORY.md")
    assert (workspace / "USER.md").exists()
