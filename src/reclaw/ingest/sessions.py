"""Import normalized conversations into the OpenClaw agent's session history.

Each conversation becomes a JSONL transcript plus an entry in the agent's
``sessions.json`` store. A content checksum stored with the entry makes
re-imports of unchanged conversations a no-op.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from reclaw.core.errors import SessionImportError
from reclaw.core.timestamps import format_iso, parse_timestamp, to_timestamp_ms, utc_now_iso
from reclaw.scheduler.base import OpenClawError
from reclaw.scheduler.openclaw import OpenClawClient
from reclaw.storage.models import CamelModel, NormalizedConversation, NormalizedMessage, Provider

ImportOutcome = Literal["imported", "updated", "skipped"]

_ROLE_MAP = {"human": "user", "assistant": "assistant", "system": "system"}


class AgentStatus(CamelModel):
    id: str = Field(..., min_length=1)
    workspace_dir: str = Field(..., min_length=1)
    sessions_path: str = Field(..., min_length=1)


class _AgentsSection(BaseModel):
    agents: list[Any] = Field(default_factory=list)


class _StatusResponse(BaseModel):
    agents: _AgentsSection = Field(default_factory=_AgentsSection)


class ReclawLegacyInfo(CamelModel):
    legacy: bool = True
    source: bool = True
    source_provider: Provider
    source_path: str
    source_conversation_id: str
    source_conversation_title: str
    source_conversation_created_at: str
    source_conversation_updated_at: str | None
    imported_at: str
    content_checksum: str


class SessionStoreEntry(CamelModel):
    session_id: str
    session_file: str
    updated_at: int
    chat_type: str = "direct"
    model: str | None = None
    origin: dict[str, Any] | None = None
    reclaw_legacy: ReclawLegacyInfo | None = None

    model_config = ConfigDict(extra="allow")


@dataclass(frozen=True)
class LegacyProviderImport:
    provider: Provider
    source_path: Path
    conversations: Sequence[NormalizedConversation]


@dataclass(frozen=True)
class LegacySessionImportError:
    provider: Provider
    conversation_id: str
    conversation_title: str
    reason: str


@dataclass
class LegacySessionImportResult:
    agent_id: str
    session_store_path: str
    attempted: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[LegacySessionImportError] = field(default_factory=list)


@dataclass(frozen=True)
class SessionIdentity:
    session_key: str
    session_id: str
    session_file: Path


class LegacySessionImporter:
    """Writes legacy conversations into the session store of the agent that owns a workspace."""

    def __init__(self, client: OpenClawClient):
        self.client = client

    def resolve_agent(self, workspace_path: Path) -> AgentStatus:
        try:
            result = self.client.run(["status", "--json"])
            status = _StatusResponse.model_validate_json(result.stdout)
        except OpenClawError as exc:
            raise SessionImportError(f"Could not query OpenClaw status: {exc}") from exc
        except ValidationError as exc:
            raise SessionImportError(f"Could not parse OpenClaw status JSON: {exc}") from exc

        agents: list[AgentStatus] = []
        for entry in status.agents.agents:
            try:
                agents.append(AgentStatus.model_validate(entry))
            except ValidationError:
                continue
        if not agents:
            raise SessionImportError("OpenClaw status did not include any registered agents.")

        resolved = workspace_path.expanduser().resolve()
        for agent in agents:
            if Path(agent.workspace_dir).expanduser().resolve() == resolved:
                return agent

        known = ", ".join(f"{agent.id}:{agent.workspace_dir}" for agent in agents)
        raise SessionImportError(
            f"Could not map workspace '{workspace_path}' to an OpenClaw agent sessions store. Known agents: {known}"
        )

    def import_sessions(
        self,
        workspace_path: Path,
        providers: Sequence[LegacyProviderImport],
    ) -> LegacySessionImportResult:
        agent = self.resolve_agent(workspace_path)
        store_path = Path(agent.sessions_path).expanduser()
        sessions_dir = store_path.parent
        sessions_dir.mkdir(parents=True, exist_ok=True)
        store = read_session_store(store_path)

        result = LegacySessionImportResult(agent_id=agent.id, session_store_path=str(store_path))
        for provider_input in providers:
            for conversation in provider_input.conversations:
                result.attempted += 1
                try:
                    outcome = self._import_one(
                        agent.id,
                        sessions_dir,
                        store,
                        provider_input,
                        workspace_path,
                        conversation,
                    )
                except (OSError, ValueError) as exc:
                    result.failed += 1
                    result.errors.append(
                        LegacySessionImportError(
                            provider=provider_input.provider,
                            conversation_id=conversation.id,
                            conversation_title=conversation.title,
                            reason=str(exc),
                        )
                    )
                    continue
                if outcome == "imported":
                    result.imported += 1
                elif outcome == "updated":
                    result.updated += 1
                else:
                    result.skipped += 1

        write_session_store(store_path, store)
        return result

    def _import_one(
        self,
        agent_id: str,
        sessions_dir: Path,
        store: dict[str, Any],
        provider_input: LegacyProviderImport,
        workspace_path: Path,
        conversation: NormalizedConversation,
    ) -> ImportOutcome:
        source_path = provider_input.source_path.expanduser().resolve()
        checksum = conversation_checksum(conversation)
        identity = session_identity(agent_id, provider_input.provider, str(source_path), conversation.id, sessions_dir)

        existing = store.get(identity.session_key)
        if existing is not None and stored_checksum(existing) == checksum:
            return "skipped"

        imported_at = utc_now_iso()
        identity.session_file.write_text(
            build_transcript(
                conversation,
                workspace_path=workspace_path,
                provider=provider_input.provider,
                source_path=str(source_path),
                checksum=checksum,
                session_id=identity.session_id,
                imported_at=imported_at,
            ),
            encoding="utf-8",
        )

        updated_at = (
            to_timestamp_ms(conversation.updated_at)
            or to_timestamp_ms(_last_message_timestamp(conversation.messages))
            or to_timestamp_ms(conversation.created_at)
            or int(datetime.now(UTC).timestamp() * 1000)
        )
        entry = SessionStoreEntry(
            session_id=identity.session_id,
            session_file=str(identity.session_file),
            updated_at=updated_at,
            model=conversation.model,
            origin={"label": "reclaw-legacy-import", "source": "reclaw", "legacy": True},
            reclaw_legacy=ReclawLegacyInfo(
                source_provider=provider_input.provider,
                source_path=str(source_path),
                source_conversation_id=conversation.id,
                source_conversation_title=conversation.title,
                source_conversation_created_at=conversation.created_at,
                source_conversation_updated_at=conversation.updated_at,
                imported_at=imported_at,
                content_checksum=checksum,
            ),
        )
        payload = entry.to_json_dict()
        payload["reclawLegacy"]["sourceConversationUpdatedAt"] = conversation.updated_at
        store[identity.session_key] = payload
        return "updated" if existing is not None else "imported"


def read_session_store(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SessionImportError(f"Invalid OpenClaw sessions store at {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SessionImportError(f"Invalid OpenClaw sessions store at {path}: expected object.")
    return payload


def write_session_store(path: Path, store: dict[str, Any]) -> None:
    ordered = {key: store[key] for key in sorted(store)}
    path.write_text(json.dumps(ordered, indent=2) + "\n", encoding="utf-8")


def stored_checksum(entry: Any) -> str:
    try:
        parsed = SessionStoreEntry.model_validate(entry)
    except ValidationError:
        return ""
    return parsed.reclaw_legacy.content_checksum if parsed.reclaw_legacy else ""


def conversation_checksum(conversation: NormalizedConversation) -> str:
    chunks = [
        conversation.source.value,
        conversation.id,
        conversation.title,
        conversation.created_at,
        conversation.updated_at or "",
        conversation.model or "",
        *(
            f"{message.role}|{message.timestamp or ''}|{message.model or ''}|{message.content}"
            for message in conversation.messages
        ),
    ]
    return hashlib.sha256("\n".join(chunks).encode("utf-8")).hexdigest()


def to_uuid_like(hex_digest: str) -> str:
    clean = "".join(char for char in hex_digest.lower() if char in "0123456789abcdef").ljust(32, "0")[:32]
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:32]}"


def session_identity(
    agent_id: str,
    provider: Provider,
    source_path: str,
    conversation_id: str,
    sessions_dir: Path,
) -> SessionIdentity:
    seed = f"{agent_id}\n{provider}\n{source_path}\n{conversation_id}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    session_id = to_uuid_like(digest[:32])
    return SessionIdentity(
        session_key=f"agent:{agent_id}:legacy:reclaw:{provider}:{digest[:16]}",
        session_id=session_id,
        session_file=sessions_dir / f"{session_id}.jsonl",
    )


def _last_message_timestamp(messages: Sequence[NormalizedMessage]) -> str | None:
    for message in reversed(messages):
        if message.timestamp:
            return message.timestamp
    return None


def _normalize_iso(candidate: str | None, fallback: str) -> str:
    parsed = parse_timestamp(candidate)
    return format_iso(parsed) if parsed is not None else fallback


def _line_id() -> str:
    return secrets.token_hex(4)


def build_transcript(
    conversation: NormalizedConversation,
    *,
    workspace_path: Path,
    provider: Provider,
    source_path: str,
    checksum: str,
    session_id: str,
    imported_at: str,
) -> str:
    """Render a session transcript: header, source marker, then chained message events."""
    started_at = _normalize_iso(conversation.created_at, imported_at)
    started = parse_timestamp(started_at)

    events: list[dict[str, Any]] = [
        {
            "type": "session",
            "version": 3,
            "id": session_id,
            "timestamp": started_at,
            "cwd": str(workspace_path.expanduser().resolve()),
        }
    ]

    marker_id = _line_id()
    events.append(
        {
            "type": "custom",
            "customType": "reclaw:legacy-source",
            "data": {
                "legacy": True,
                "source": True,
                "provider": str(provider),
                "sourcePath": source_path,
                "conversationId": conversation.id,
                "conversationTitle": conversation.title,
                "conversationCreatedAt": conversation.created_at,
                "conversationUpdatedAt": conversation.updated_at,
                "messageCount": conversation.message_count,
                "importedAt": imported_at,
                "checksum": checksum,
            },
            "id": marker_id,
            "parentId": None,
            "timestamp": started_at,
        }
    )

    parent_id = marker_id
    for index, message in enumerate(conversation.messages):
        fallback = format_iso(started + timedelta(milliseconds=index)) if started is not None else started_at
        timestamp = _normalize_iso(message.timestamp, fallback)
        message_id = _line_id()
        payload: dict[str, Any] = {
            "role": _ROLE_MAP.get(message.role, "system"),
            "content": [{"type": "text", "text": message.content}],
        }
        timestamp_ms = to_timestamp_ms(message.timestamp) or to_timestamp_ms(timestamp)
        if timestamp_ms is not None:
            payload["timestamp"] = timestamp_ms
        events.append(
            {
                "type": "message",
                "id": message_id,
                "parentId": parent_id,
                "timestamp": timestamp,
                "message": payload,
            }
        )
        parent_id = message_id

    return "\n".join(json.dumps(event) for event in events) + "\n"
