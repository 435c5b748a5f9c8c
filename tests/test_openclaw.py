from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path

import pytest

from reclaw.core.runner import CommandResult
from reclaw.scheduler.base import OpenClawError, OpenClawErrorCode
from reclaw.scheduler.openclaw import (
    OpenClawClient,
    default_model,
    ensure_concurrency_config,
    parse_models,
    resolve_model,
)


class QueueRunner:
    """Answers every call with the next canned result."""

    def __init__(self, *results: CommandResult | Exception):
        self.results = list(results)
        self.calls: list[list[str]] = []

    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        self.calls.append([command, *args])
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _runs(*entries: dict) -> CommandResult:
    return CommandResult(0, json.dumps({"entries": list(entries)}))


def _client(runner: QueueRunner, **kwargs) -> OpenClawClient:
    return OpenClawClient(runner, poll_interval=0, **kwargs)


class TestSchedule:
    def test_legacy_dialect_is_tried_first(self) -> None:
        runner = QueueRunner(CommandResult(0, json.dumps({"id": "job-1"})))

        job = asyncio.run(_client(runner).schedule("hello", model="haiku", session_name="reclaw-extract"))

        assert job.job_id == "job-1"
        assert job.mode == "legacy"
        args = runner.calls[0]
        assert args[:3] == ["openclaw", "cron", "add"]
        assert args[args.index("--at") + 1] == "+0s"
        assert args[args.index("--session") + 1] == "reclaw-extract"
        assert args[args.index("--model") + 1] == "haiku"
        assert "--no-deliver" in args

    def test_falls_back_to_compatible_dialect(self) -> None:
        runner = QueueRunner(
            CommandResult(1, stderr="unknown option --at +0s"),
            CommandResult(0, json.dumps({"id": "job-2"})),
        )

        job = asyncio.run(_client(runner).schedule("hello"))

        assert job.job_id == "job-2"
        assert job.mode == "compatible"
        compatible = runner.calls[1]
        assert compatible[compatible.index("--session") + 1] == "isolated"
        assert compatible[compatible.index("--at") + 1].endswith("Z")

    def test_both_dialects_failing_reports_both_details(self) -> None:
        runner = QueueRunner(
            CommandResult(1, stderr="legacy exploded"),
            CommandResult(2, stderr="compatible exploded"),
        )

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).schedule("hello"))

        assert excinfo.value.code == OpenClawErrorCode.SCHEDULING_FAILED
        assert "legacy exploded" in str(excinfo.value)
        assert "compatible exploded" in str(excinfo.value)
        assert len(runner.calls) == 2

    def test_missing_binary_is_not_retried(self) -> None:
        runner = QueueRunner(FileNotFoundError("openclaw"))

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).schedule("hello"))

        assert excinfo.value.code == OpenClawErrorCode.CLI_NOT_FOUND
        assert len(runner.calls) == 1

    def test_response_without_job_id_fails(self) -> None:
        runner = QueueRunner(CommandResult(0, "{}"))

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).schedule("hello"))

        assert excinfo.value.code == OpenClawErrorCode.SCHEDULING_FAILED


class TestAwaitResult:
    def test_returns_latest_finished_summary(self) -> None:
        runner = QueueRunner(
            _runs({"action": "started", "ts": 1}),
            _runs(
                {"action": "finished", "status": "ok", "summary": "old", "ts": 2},
                {"action": "finished", "status": "ok", "summary": "new", "ts": 5},
            ),
        )

        assert asyncio.run(_client(runner).await_result("job-1")) == "new"
        assert runner.calls[0][1:] == ["cron", "runs", "--id", "job-1", "--limit", "20"]

    def test_non_ok_status_fails_the_job(self) -> None:
        runner = QueueRunner(_runs({"action": "finished", "status": "error", "error": "model crashed", "ts": 1}))

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).await_result("job-1"))

        assert excinfo.value.code == OpenClawErrorCode.JOB_FAILED
        assert "model crashed" in str(excinfo.value)

    def test_delivery_failure_with_summary_still_succeeds(self) -> None:
        runner = QueueRunner(
            _runs(
                {
                    "action": "finished",
                    "status": "error",
                    "error": "cron announce delivery failed: no channel",
                    "summary": "Decision: Ship v1",
                    "ts": 1,
                }
            )
        )

        assert asyncio.run(_client(runner).await_result("job-1")) == "Decision: Ship v1"

    def test_transient_poll_failures_are_tolerated(self) -> None:
        runner = QueueRunner(
            CommandResult(1, stderr="gateway busy"),
            CommandResult(0, "not json"),
            subprocess.TimeoutExpired("openclaw", 30),
            _runs({"action": "finished", "status": "ok", "summary": "done", "ts": 1}),
        )

        assert asyncio.run(_client(runner).await_result("job-1")) == "done"

    def test_repeated_poll_failures_give_up(self) -> None:
        runner = QueueRunner(*[CommandResult(0, "not json") for _ in range(5)])

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).await_result("job-1"))

        assert excinfo.value.code == OpenClawErrorCode.INVALID_JSON
        assert len(runner.calls) == 5

    def test_missing_binary_during_polling_fails_immediately(self) -> None:
        runner = QueueRunner(FileNotFoundError("openclaw"))

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(_client(runner).await_result("job-1"))

        assert excinfo.value.code == OpenClawErrorCode.CLI_NOT_FOUND

    def test_times_out_when_job_never_finishes(self) -> None:
        class PendingRunner:
            def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
                return _runs({"action": "started", "ts": 1})

        client = OpenClawClient(PendingRunner(), poll_interval=0.01, wait_timeout_seconds=0.05)

        with pytest.raises(OpenClawError) as excinfo:
            asyncio.run(client.await_result("job-1"))

        assert excinfo.value.code == OpenClawErrorCode.TIMEOUT


def test_cancel_swallows_failures() -> None:
    runner = QueueRunner(OSError("no such process"))

    asyncio.run(_client(runner).cancel("job-1"))

    assert runner.calls[0][1:] == ["cron", "rm", "job-1"]


class TestModels:
    RAW = json.dumps(
        {
            "models": [
                {"key": "anthropic/claude-haiku", "name": "Claude Haiku", "tags": ["alias:haiku"]},
                {"key": "google/gemini-flash", "name": "Gemini Flash", "tags": ["default"]},
                {"key": "openai/gone", "name": "Gone", "missing": True},
                {"name": "no key"},
            ]
        }
    )

    def test_parse_models_skips_missing_entries(self) -> None:
        models = parse_models(self.RAW)

        assert [model.key for model in models] == ["anthropic/claude-haiku", "google/gemini-flash"]
        assert models[0].alias == "haiku"
        assert models[0].label == "Claude Haiku (haiku)"
        assert default_model(models).key == "google/gemini-flash"

    def test_resolve_model_matches_key_alias_or_name(self) -> None:
        models = parse_models(self.RAW)

        assert resolve_model(models, "HAIKU").key == "anthropic/claude-haiku"
        assert resolve_model(models, "gemini flash").key == "google/gemini-flash"
        assert resolve_model(models, "google/gemini-flash").key == "google/gemini-flash"
        assert resolve_model(models, "gpt-9") is None

    def test_list_models_falls_back_to_list_subcommand(self) -> None:
        runner = QueueRunner(CommandResult(1, stderr="unknown flag"), CommandResult(0, self.RAW))

        models = _client(runner).list_models()

        assert len(models) == 2
        assert runner.calls[1][1:] == ["models", "list", "--json"]

    def test_list_models_reports_failure(self) -> None:
        runner = QueueRunner(CommandResult(1, stderr="nope"), CommandResult(1, stderr="still nope"))

        with pytest.raises(OpenClawError) as excinfo:
            _client(runner).list_models()

        assert "still nope" in str(excinfo.value)


class TestConcurrencyConfig:
    def test_raises_limits_but_never_lowers_them(self, tmp_path: Path) -> None:
        config_path = tmp_path / "openclaw.json"
        config_path.write_text(json.dumps({"cron": {"maxConcurrentRuns": 2}, "agents": {"defaults": {"maxConcurrent": 9}}}))

        result = ensure_concurrency_config(tmp_path, 5)

        assert result.changed is True
        saved = json.loads(config_path.read_text())
        assert saved["cron"]["maxConcurrentRuns"] == 5
        assert saved["agents"]["defaults"]["maxConcurrent"] == 9

        again = ensure_concurrency_config(tmp_path, 5)
        assert again.changed is False

    def test_missing_config_is_reported_not_raised(self, tmp_path: Path) -> None:
        result = ensure_concurrency_config(tmp_path, 5)

        assert result.changed is False
        assert result.message is not None
        assert "openclaw.json" in result.message
