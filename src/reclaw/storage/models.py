from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Provider(StrEnum):
    """Chat export providers Reclaw can migrate."""

    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GROK = "grok"


ALL_PROVIDERS: tuple[Provider, ...] = (Provider.CHATGPT, Provider.CLAUDE, Provider.GROK)

PROVIDER_LABELS: dict[Provider, str] = {
    Provider.CHATGPT: "ChatGPT",
    Provider.CLAUDE: "Claude",
    Provider.GROK: "Grok",
}


class ExtractionMode(StrEnum):
    OPENCLAW = "openclaw"
    ZETTELCLAW = "zettelclaw"


class BackupMode(StrEnum):
    OVERWRITE = "overwrite"
    TIMESTAMPED = "timestamped"


class SessionImportMode(StrEnum):
    ON = "on"
    OFF = "off"
    REQUIRED = "required"


def _valid_providers(values: Any) -> list[Provider]:
    if not isinstance(values, list):
        return []
    providers: list[Provider] = []
    for value in values:
        try:
            provider = Provider(value)
        except ValueError:
            continue
        if provider not in providers:
            providers.append(provider)
    return providers


class CamelModel(BaseModel):
    """Base for records persisted or exchanged as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class NormalizedMessage(CamelModel):
    role: Literal["human", "assistant", "system"]
    content: str
    timestamp: str | None = None
    model: str | None = None

    model_config = ConfigDict(frozen=True)


class NormalizedConversation(CamelModel):
    """Provider-agnostic conversation produced by the export parsers."""

    id: str = Field(..., min_length=1)
    title: str = ""
    source: Provider
    created_at: str
    updated_at: str | None = None
    message_count: int = 0
    messages: list[NormalizedMessage] = Field(default_factory=list)
    model: str | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _default_message_count(cls, data: Any) -> Any:
        if isinstance(data, dict) and "messageCount" not in data and "message_count" not in data:
            messages = data.get("messages")
            data = {**data, "messageCount": len(messages) if isinstance(messages, list) else 0}
        return data


class ConversationBatch(CamelModel):
    """All selected conversations for one calendar date."""

    id: str
    providers: list[Provider]
    date: str
    index: int = 1
    total_for_date: int = 1
    conversations: list[NormalizedConversation]

    model_config = ConfigDict(frozen=True)


class SubagentExtraction(CamelModel):
    summary: str = ""

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class BatchConversationRef(CamelModel):
    provider: Provider
    id: str = Field(..., min_length=1)
    timestamp: str | None = None

    model_config = ConfigDict(frozen=True)


class BatchExtractionResult(CamelModel):
    """Persisted outcome of one batch. Immutable once written to state."""

    batch_id: str = ""
    providers: list[Provider]
    date: str = "1970-01-01"
    conversation_ids: list[str] = Field(default_factory=list)
    conversation_refs: list[BatchConversationRef] = Field(default_factory=list)
    conversation_count: int = 0
    extraction: SubagentExtraction

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _tolerate_partial_records(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        record = dict(data)

        providers = _valid_providers(record.get("providers"))
        legacy_provider = record.pop("provider", None)
        if not providers and legacy_provider is not None:
            providers = _valid_providers([legacy_provider])

        raw_ids = record.get("conversationIds", record.get("conversation_ids"))
        conversation_ids = [entry for entry in raw_ids if isinstance(entry, str)] if isinstance(raw_ids, list) else []

        raw_refs = record.pop("conversationRefs", record.pop("conversation_refs", None))
        refs: list[BatchConversationRef] = []
        if isinstance(raw_refs, list):
            for entry in raw_refs:
                try:
                    refs.append(BatchConversationRef.model_validate(entry))
                except ValidationError:
                    continue
        elif providers:
            refs = [BatchConversationRef(provider=providers[0], id=entry) for entry in conversation_ids if entry]

        if not providers:
            providers = _valid_providers([ref.provider.value for ref in refs])

        count = record.get("conversationCount", record.get("conversation_count"))
        if not isinstance(count, int) or isinstance(count, bool):
            count = len(conversation_ids)

        record.pop("conversation_ids", None)
        record.pop("conversation_count", None)
        record.update(
            providers=providers,
            conversationIds=conversation_ids,
            conversationRefs=refs,
            conversationCount=count,
        )
        for key in ("batchId", "date"):
            if key in record and not isinstance(record[key], str):
                record.pop(key)
        return record

    @field_validator("providers")
    @classmethod
    def _require_provider(cls, value: list[Provider]) -> list[Provider]:
        if not value:
            raise ValueError("batch result has no known provider")
        return value


class ReclawState(CamelModel):
    """Resumable run record keyed by a content-derived run key."""

    version: Literal[1] = 1
    run_key: str
    mode: ExtractionMode
    model: str
    target_path: str
    memory_workspace_path: str = ""
    created_at: str
    updated_at: str
    completed: dict[str, BatchExtractionResult] = Field(default_factory=dict)

    @field_validator("completed", mode="before")
    @classmethod
    def _drop_invalid_results(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise ValueError("completed must be an object")
        completed: dict[str, BatchExtractionResult] = {}
        for key, entry in value.items():
            try:
                result = BatchExtractionResult.model_validate(entry)
            except ValidationError:
                continue
            if not result.batch_id:
                result = result.model_copy(update={"batch_id": key})
            completed[key] = result
        return completed


class AggregatedInsights(CamelModel):
    summary: str = ""
    interests: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    facts: list[str] = Field(default_factory=list)
    preferences: list[str] = Field(default_factory=list)
    people: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)


class ExtractionArtifacts(CamelModel):
    output_files: list[str] = Field(default_factory=list)
    memory_file_path: str | None = None
    user_file_path: str | None = None
    insights: AggregatedInsights = Field(default_factory=AggregatedInsights)


class ExtractionConfig(BaseModel):
    """Defaults for ``reclaw run``."""

    mode: ExtractionMode = ExtractionMode.OPENCLAW
    model: str | None = None
    target_path: str | None = Field(
        default=None,
        description="Output root (OpenClaw workspace or Zettelclaw vault)",
    )
    memory_workspace_path: str | None = Field(
        default=None,
        description="Directory holding MEMORY.md/USER.md; defaults to the OpenClaw workspace",
    )
    state_path: str = ".reclaw-state.json"
    parallel_jobs: int = Field(default=5, ge=1)
    max_prompt_chars: int = Field(default=110_000, gt=0)
    include_session_footers: bool = True
    backup_mode: BackupMode = BackupMode.OVERWRITE


class SchedulerConfig(BaseModel):
    """How the external subagent job scheduler is reached."""

    binary: str = "openclaw"
    openclaw_dir: str = Field(default="~/.openclaw", description="Directory holding openclaw.json")
    job_timeout_seconds: int = Field(default=1800, gt=0)
    wait_timeout_seconds: float = Field(default=1900.0, gt=0)
    poll_interval_seconds: float = Field(default=3.0, ge=0)
    command_timeout_seconds: float = Field(default=60.0, gt=0)


class SessionsConfig(BaseModel):
    """Legacy session-history import settings."""

    mode: SessionImportMode | None = Field(
        default=None,
        description="on/off/required; None means on",
    )
    workspace_path: str = "~/.openclaw/workspace"


class ReclawConfig(BaseModel):
    """Root configuration for .reclaw/config.yaml."""

    extends: list[str] = Field(default_factory=list)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
