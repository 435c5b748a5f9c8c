from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from reclaw.cli.status import build_status_report, render_status_json, render_status_text, summarize_completed
from reclaw.storage.models import Provider

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _state(target_path: Path, **overrides) -> dict:
    payload = {
        "version": 1,
        "runKey": "run-1",
        "mode": "openclaw",
        "model": "haiku",
        "targetPath": str(target_path),
        "createdAt": "2026-02-20T10:00:00.000Z",
        "updatedAt": "2026-02-28T10:00:00.000Z",
        "completed": {
            "b1": {
                "batchId": "b1",
                "providers": ["chatgpt", "claude"],
                "date": "2026-01-07",
                "conversationIds": ["c1", "c2", "c3"],
                "conversationRefs": [
                    {"provider": "chatgpt", "id": "c1"},
                    {"provider": "chatgpt", "id": "c2"},
                    {"provider": "claude", "id": "c3"},
                ],
                "conversationCount": 3,
            },
            "b2": {"providers": ["grok"], "date": "2026-01-03", "conversationIds": ["g1", "g2"]},
        },
    }
    payload.update(overrides)
    return payload


def _write(path: Path, payload: dict | str) -> Path:
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


def test_missing_state_file(tmp_path: Path) -> None:
    report = build_status_report(tmp_path / "state.json", now=NOW)

    assert report.state_file.exists is False
    assert report.state is None
    assert report.notes == ["No state file found yet. Run reclaw extraction once to initialize resumable state."]
    assert "(missing)" in render_status_text(report)


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    report = build_status_report(_write(tmp_path / "state.json", "{nope"), now=NOW)

    assert report.state_file.exists is True
    assert report.state_file.parse_error.startswith("Invalid JSON:")
    assert report.state is None


def test_schema_mismatch_is_reported(tmp_path: Path) -> None:
    report = build_status_report(_write(tmp_path / "state.json", {"version": 2}), now=NOW)

    assert report.state_file.parse_error == "JSON shape does not match reclaw state schema."
    assert report.notes == ["State file JSON schema is invalid for reclaw v1 state."]


def test_valid_state_metrics_and_paths(tmp_path: Path) -> None:
    (tmp_path / "memory").mkdir()
    report = build_status_report(_write(tmp_path / "state.json", _state(tmp_path)), now=NOW)

    state = report.state
    assert state is not None
    assert state.paths.target_path_exists is True
    assert state.paths.output_dir_path == str(tmp_path / "memory")
    assert state.paths.output_dir_exists is True
    metrics = state.metrics
    assert metrics.completed_batches == 2
    assert metrics.completed_conversations == 5
    assert metrics.provider_conversation_counts == {Provider.CHATGPT: 2, Provider.CLAUDE: 1, Provider.GROK: 2}
    assert metrics.provider_batch_counts == {Provider.CHATGPT: 1, Provider.CLAUDE: 1, Provider.GROK: 1}
    assert (metrics.earliest_batch_date, metrics.latest_batch_date) == ("2026-01-03", "2026-01-07")
    assert len(report.notes) == 1
    assert report.notes[0].startswith("Pending/failed batch counts are not derivable")


def test_missing_paths_empty_and_stale_state_add_notes(tmp_path: Path) -> None:
    payload = _state(
        tmp_path / "vault",
        mode="zettelclaw",
        completed={},
        updatedAt="2026-02-01T00:00:00.000Z",
    )

    report = build_status_report(_write(tmp_path / "state.json", payload), now=NOW)

    assert report.state.paths.output_dir_path == str(tmp_path / "vault" / "03 Journal")
    assert report.notes[:4] == [
        f"Target path does not exist: {tmp_path / 'vault'}",
        f"Expected output directory is missing: {tmp_path / 'vault' / '03 Journal'}",
        "No completed batches are recorded in state yet.",
        "State appears stale (last update is older than 14 days).",
    ]
    assert "- Batch date range: none" in render_status_text(report)


def test_invalid_timestamps_render_as_invalid(tmp_path: Path) -> None:
    report = build_status_report(_write(tmp_path / "state.json", _state(tmp_path, createdAt="garbage")), now=NOW)

    assert report.state.created_at.iso == "invalid"
    assert report.state.created_at.local == "Invalid date"


def test_even_split_for_records_without_refs() -> None:
    metrics = summarize_completed(
        {
            "b1": {"providers": ["chatgpt", "claude", "chatgpt", "bogus"], "conversationCount": 5},
            "b2": "not a record",
        }
    )

    assert metrics.completed_batches == 2
    assert metrics.completed_conversations == 5
    assert metrics.provider_conversation_counts[Provider.CHATGPT] == 3
    assert metrics.provider_conversation_counts[Provider.CLAUDE] == 2
    assert metrics.earliest_batch_date is None


def test_json_rendering_uses_camel_case(tmp_path: Path) -> None:
    report = build_status_report(_write(tmp_path / "state.json", _state(tmp_path)), now=NOW)

    rendered = json.loads(render_status_json(report))

    assert rendered["stateFile"]["exists"] is True
    assert rendered["state"]["metrics"]["providerConversationCounts"] == {"chatgpt": 2, "claude": 1, "grok": 2}
    assert rendered["checkedAt"]["iso"] == "2026-03-01T12:00:00.000Z"
