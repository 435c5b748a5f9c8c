from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

from reclaw.core.errors import ReclawError


class OpenClawErrorCode(StrEnum):
    CLI_NOT_FOUND = "CLI_NOT_FOUND"
    COMMAND_FAILED = "COMMAND_FAILED"
    INVALID_JSON = "INVALID_JSON"
    SCHEDULING_FAILED = "SCHEDULING_FAILED"
    JOB_FAILED = "JOB_FAILED"
    TIMEOUT = "TIMEOUT"


class OpenClawError(ReclawError):
    """Failure talking to the openclaw job scheduler."""

    def __init__(self, code: OpenClawErrorCode, message: str, details: str | None = None):
        self.code = code
        self.message = message
        self.details = details
        rendered = f"[{code}] {message}"
        if details:
            rendered = f"{rendered} ({details})"
        super().__init__(rendered)


class ScheduledJob(BaseModel):
    job_id: str
    mode: Literal["legacy", "compatible"]


class CronAddResponse(BaseModel):
    id: str = Field(..., min_length=1)


class CronRunEntry(BaseModel):
    action: str | None = None
    status: str | None = None
    summary: str | None = None
    error: str | None = None
    ts: float | None = None


class CronRunsResponse(BaseModel):
    entries: list[CronRunEntry] = Field(default_factory=list)


class ModelInfo(BaseModel):
    key: str
    name: str
    alias: str | None = None
    is_default: bool = False

    @property
    def label(self) -> str:
        return f"{self.name} ({self.alias})" if self.alias else f"{self.name} ({self.key})"


class ConcurrencyPatchResult(BaseModel):
    changed: bool
    cron_max_concurrent_runs: int | None = None
    agent_max_concurrent: int | None = None
    message: str | None = None
