from __future__ import annotations

import asyncio
import json
import re
import subprocess
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from reclaw.core.runner import CommandResult, ProcessRunner, SubprocessRunner
from reclaw.core.timestamps import format_iso
from reclaw.scheduler.base import (
    ConcurrencyPatchResult,
    CronAddResponse,
    CronRunEntry,
    CronRunsResponse,
    ModelInfo,
    OpenClawError,
    OpenClawErrorCode,
    ScheduledJob,
)
from reclaw.storage.models import SchedulerConfig

DEFAULT_SESSION_NAME = "reclaw-extract"
MAX_TRANSIENT_POLL_FAILURES = 5
POLL_COMMAND_TIMEOUT_SECONDS = 30.0
REMOVE_COMMAND_TIMEOUT_SECONDS = 15.0
MODELS_COMMAND_TIMEOUT_SECONDS = 15.0

_DELIVERY_FAILURE_MARKERS = (
    "cron delivery target is missing",
    "cron announce delivery failed",
)
_POSITIVE_INT_RE = re.compile(r"^\d+$")


class OpenClawClient:
    """Client for the ``openclaw`` CLI used as a subagent job scheduler.

    Jobs are scheduled with ``cron add``, polled with ``cron runs`` and removed
    with ``cron rm``. The blocking CLI calls run in worker threads so several
    batches can poll concurrently.
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        *,
        binary: str = "openclaw",
        command_timeout: float = 60.0,
        poll_interval: float = 3.0,
        job_timeout_seconds: int = 1800,
        wait_timeout_seconds: float = 1900.0,
    ):
        self.runner = runner or SubprocessRunner()
        self.binary = binary
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self.job_timeout_seconds = job_timeout_seconds
        self.wait_timeout_seconds = wait_timeout_seconds

    @classmethod
    def from_config(cls, config: SchedulerConfig, runner: ProcessRunner | None = None) -> OpenClawClient:
        return cls(
            runner,
            binary=config.binary,
            command_timeout=config.command_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
            job_timeout_seconds=config.job_timeout_seconds,
            wait_timeout_seconds=config.wait_timeout_seconds,
        )

    def _describe(self, args: list[str]) -> str:
        # The message argument can be a whole prompt; keep errors readable.
        return " ".join([self.binary, *args[:2]])

    def run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        allow_failure: bool = False,
    ) -> CommandResult:
        """Run one openclaw command synchronously."""
        try:
            result = self.runner.run(self.binary, args, timeout=timeout or self.command_timeout)
        except FileNotFoundError as exc:
            raise OpenClawError(
                OpenClawErrorCode.CLI_NOT_FOUND,
                f"{self.binary} CLI was not found on PATH.",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise OpenClawError(
                OpenClawErrorCode.COMMAND_FAILED,
                f"{self._describe(args)} timed out.",
                str(exc),
            ) from exc
        except OSError as exc:
            raise OpenClawError(
                OpenClawErrorCode.COMMAND_FAILED,
                f"{self._describe(args)} failed before execution.",
                str(exc),
            ) from exc

        if not result.ok and not allow_failure:
            raise OpenClawError(
                OpenClawErrorCode.COMMAND_FAILED,
                f"{self._describe(args)} failed.",
                result.detail(),
            )
        return result

    async def run_async(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        allow_failure: bool = False,
    ) -> CommandResult:
        return await asyncio.to_thread(self.run, args, timeout=timeout, allow_failure=allow_failure)

    async def schedule(
        self,
        message: str,
        *,
        model: str | None = None,
        session_name: str | None = None,
        timeout_seconds: int | None = None,
    ) -> ScheduledJob:
        """Schedule a one-shot subagent job.

        Tries the legacy ``--at +0s`` argument shape first and falls back once to
        the isolated-session shape with an absolute start time.
        """
        name = session_name or DEFAULT_SESSION_NAME
        seconds = timeout_seconds or self.job_timeout_seconds

        legacy_args = self._cron_add_args("+0s", name, name, message, seconds, model)
        legacy_failure = await self._try_schedule(legacy_args)
        if isinstance(legacy_failure, CommandResult):
            return ScheduledJob(job_id=self._parse_job_id(legacy_failure.stdout), mode="legacy")

        now_iso = format_iso(datetime.now(UTC))
        compatible_args = self._cron_add_args(now_iso, "isolated", name, message, seconds, model)
        compatible_failure = await self._try_schedule(compatible_args)
        if isinstance(compatible_failure, CommandResult):
            return ScheduledJob(job_id=self._parse_job_id(compatible_failure.stdout), mode="compatible")

        raise OpenClawError(
            OpenClawErrorCode.SCHEDULING_FAILED,
            f"Could not schedule subagent via `{self.binary} cron add` (legacy + compatibility attempts failed).",
            f"{legacy_failure}; {compatible_failure}",
        )

    async def _try_schedule(self, args: list[str]) -> CommandResult | str:
        """Return the successful result, or a failure detail string."""
        try:
            result = await self.run_async(args, allow_failure=True)
        except OpenClawError as exc:
            if exc.code == OpenClawErrorCode.CLI_NOT_FOUND:
                raise
            return exc.details or exc.message
        if result.ok:
            return result
        return result.stderr.strip() or result.stdout.strip() or str(result.status)

    @staticmethod
    def _cron_add_args(
        at: str,
        session: str,
        name: str,
        message: str,
        timeout_seconds: int,
        model: str | None,
    ) -> list[str]:
        args = [
            "cron",
            "add",
            "--at",
            at,
            "--session",
            session,
            "--name",
            name,
            "--message",
            message,
            "--no-deliver",
            "--delete-after-run",
            "--timeout-seconds",
            str(timeout_seconds),
            "--json",
        ]
        if model:
            args.extend(["--model", model])
        return args

    def _parse_job_id(self, stdout: str) -> str:
        try:
            return CronAddResponse.model_validate_json(stdout).id
        except ValidationError as exc:
            raise OpenClawError(
                OpenClawErrorCode.SCHEDULING_FAILED,
                f"{self.binary} cron add did not return a job id.",
                stdout.strip() or str(exc),
            ) from exc

    async def await_result(self, job_id: str, *, timeout_seconds: float | None = None) -> str:
        """Poll ``cron runs`` until the job reports a finished entry.

        Returns the job summary. A non-ok status raises JOB_FAILED unless the only
        problem was delivering the result and a summary is present.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout_seconds or self.wait_timeout_seconds)
        args = ["cron", "runs", "--id", job_id, "--limit", "20"]
        transient_failures = 0

        while loop.time() < deadline:
            failure: OpenClawError | None = None
            try:
                result = await self.run_async(args, timeout=POLL_COMMAND_TIMEOUT_SECONDS, allow_failure=True)
            except OpenClawError as exc:
                if exc.code == OpenClawErrorCode.CLI_NOT_FOUND:
                    raise
                failure = OpenClawError(
                    OpenClawErrorCode.COMMAND_FAILED,
                    f"{self.binary} cron runs failed repeatedly while waiting for job {job_id}.",
                    exc.details or exc.message,
                )
            else:
                if not result.ok:
                    failure = OpenClawError(
                        OpenClawErrorCode.COMMAND_FAILED,
                        f"{self.binary} cron runs failed repeatedly while waiting for job {job_id}.",
                        result.detail(),
                    )
                else:
                    try:
                        runs = CronRunsResponse.model_validate_json(result.stdout)
                    except ValidationError as exc:
                        failure = OpenClawError(
                            OpenClawErrorCode.INVALID_JSON,
                            f"{self.binary} cron runs returned invalid JSON repeatedly for job {job_id}.",
                            str(exc),
                        )

            if failure is not None:
                transient_failures += 1
                if transient_failures >= MAX_TRANSIENT_POLL_FAILURES:
                    raise failure
                await asyncio.sleep(self.poll_interval)
                continue

            transient_failures = 0
            finished = latest_finished_entry(runs.entries)
            if finished is not None:
                return _summary_from_entry(job_id, finished)

            await asyncio.sleep(self.poll_interval)

        raise OpenClawError(
            OpenClawErrorCode.TIMEOUT,
            f"Timed out waiting for subagent result for cron job {job_id}.",
        )

    async def cancel(self, job_id: str) -> None:
        """Remove a job. Cleanup is best effort and never raises."""
        try:
            await self.run_async(["cron", "rm", job_id], timeout=REMOVE_COMMAND_TIMEOUT_SECONDS, allow_failure=True)
        except OpenClawError:
            pass

    def list_models(self) -> list[ModelInfo]:
        """List models known to the scheduler host, skipping missing ones."""
        direct = self.run(["models", "--json"], timeout=MODELS_COMMAND_TIMEOUT_SECONDS, allow_failure=True)
        if direct.ok and direct.stdout.strip():
            models = parse_models(direct.stdout)
            if models:
                return models

        fallback = self.run(["models", "list", "--json"], timeout=MODELS_COMMAND_TIMEOUT_SECONDS, allow_failure=True)
        if not fallback.ok or not fallback.stdout.strip():
            detail = fallback.stderr.strip() or direct.stderr.strip() or f"Could not list models from {self.binary}"
            raise OpenClawError(OpenClawErrorCode.COMMAND_FAILED, detail)

        models = parse_models(fallback.stdout)
        if not models:
            raise OpenClawError(OpenClawErrorCode.COMMAND_FAILED, f"{self.binary} returned no models")
        return models


def latest_finished_entry(entries: list[CronRunEntry]) -> CronRunEntry | None:
    finished = [entry for entry in entries if entry.action == "finished"]
    if not finished:
        return None
    return max(finished, key=lambda entry: entry.ts or 0)


def _summary_from_entry(job_id: str, entry: CronRunEntry) -> str:
    if not entry.status or entry.status == "ok":
        return entry.summary or ""

    error_text = (entry.error or "").strip()
    summary_text = entry.summary if entry.summary and entry.summary.strip() else ""
    lowered = error_text.lower()
    if summary_text and any(marker in lowered for marker in _DELIVERY_FAILURE_MARKERS):
        return summary_text

    raise OpenClawError(
        OpenClawErrorCode.JOB_FAILED,
        f"Subagent job {job_id} finished with status '{entry.status}'.",
        error_text or summary_text or "no summary",
    )


def parse_models(raw: str) -> list[ModelInfo]:
    """Parse ``models --json`` output into ModelInfo records."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise OpenClawError(
            OpenClawErrorCode.INVALID_JSON,
            "OpenClaw returned invalid model JSON.",
            str(exc),
        ) from exc

    raw_models = payload.get("models") if isinstance(payload, dict) else None
    if not isinstance(raw_models, list):
        return []

    models: list[ModelInfo] = []
    for entry in raw_models:
        if not isinstance(entry, dict):
            continue
        key = entry.get("key") if isinstance(entry.get("key"), str) else ""
        name = entry.get("name") if isinstance(entry.get("name"), str) and entry.get("name") else key
        tags = [tag for tag in entry.get("tags") or [] if isinstance(tag, str)]
        if not key or entry.get("missing") is True or "missing" in tags:
            continue
        alias = next((tag[len("alias:") :] for tag in tags if tag.startswith("alias:")), "")
        models.append(
            ModelInfo(key=key, name=name, alias=alias or None, is_default="default" in tags)
        )
    return models


def resolve_model(models: list[ModelInfo], requested: str) -> ModelInfo | None:
    """Match a requested model by key, alias or display name, case-insensitively."""
    wanted = requested.strip().lower()
    for model in models:
        candidates = [value.lower() for value in (model.key, model.alias, model.name) if value and value.strip()]
        if wanted in candidates:
            return model
    return None


def default_model(models: list[ModelInfo]) -> ModelInfo | None:
    return next((model for model in models if model.is_default), models[0] if models else None)


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        normalized = int(value)
        return normalized if normalized > 0 else None
    if isinstance(value, str) and _POSITIVE_INT_RE.match(value.strip()):
        normalized = int(value.strip())
        return normalized if normalized > 0 else None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def ensure_concurrency_config(openclaw_dir: Path, minimum_concurrent: int) -> ConcurrencyPatchResult:
    """Raise openclaw's cron and agent concurrency limits to at least ``minimum_concurrent``.

    Existing higher limits are kept. Problems are reported in ``message`` instead of raised.
    """
    config_path = openclaw_dir / "openclaw.json"
    minimum = max(1, int(minimum_concurrent))

    try:
        config = _as_dict(json.loads(config_path.read_text(encoding="utf-8")))
        cron = _as_dict(config.get("cron"))
        agents = _as_dict(config.get("agents"))
        defaults = _as_dict(agents.get("defaults"))
        config["cron"] = cron
        config["agents"] = agents
        agents["defaults"] = defaults

        current_cron = _positive_int(cron.get("maxConcurrentRuns"))
        current_agent = _positive_int(defaults.get("maxConcurrent"))
        target_cron = max(current_cron or 0, minimum)
        target_agent = max(current_agent or 0, minimum)

        changed = False
        if current_cron != target_cron or not isinstance(cron.get("maxConcurrentRuns"), int):
            cron["maxConcurrentRuns"] = target_cron
            changed = True
        if current_agent != target_agent or not isinstance(defaults.get("maxConcurrent"), int):
            defaults["maxConcurrent"] = target_agent
            changed = True

        if changed:
            config_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
    except (OSError, ValueError) as exc:
        return ConcurrencyPatchResult(
            changed=False,
            message=f"Could not configure extraction concurrency in {config_path}: {exc}",
        )

    return ConcurrencyPatchResult(
        changed=changed,
        cron_max_concurrent_runs=target_cron,
        agent_max_concurrent=target_agent,
    )
