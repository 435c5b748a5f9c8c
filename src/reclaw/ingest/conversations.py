"""Reader for normalized conversation files (JSON list, wrapped object or JSONL)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from reclaw.core.errors import ConversationInputError
from reclaw.core.timestamps import to_iso_timestamp
from reclaw.storage.models import NormalizedConversation

_TIMESTAMP_KEYS = ("createdAt", "created_at", "updatedAt", "updated_at")


def _normalize_record(record: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(record)
    for key in _TIMESTAMP_KEYS:
        if key in normalized:
            value = to_iso_timestamp(normalized[key])
            if value is None:
                normalized.pop(key)
            else:
                normalized[key] = value

    messages = normalized.get("messages")
    if isinstance(messages, list):
        normalized["messages"] = [
            {**message, "timestamp": to_iso_timestamp(message.get("timestamp"))} if isinstance(message, dict) else message
            for message in messages
        ]
    return normalized


def _read_records(path: Path) -> list[Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConversationInputError(f"Could not read conversations from {path}: {exc}") from exc

    if path.suffix.lower() == ".jsonl":
        records: list[Any] = []
        for line_number, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ConversationInputError(f"{path}:{line_number}: invalid JSON ({exc.msg})") from exc
        return records

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConversationInputError(f"{path}: invalid JSON ({exc.msg})") from exc

    if isinstance(payload, dict) and isinstance(payload.get("conversations"), list):
        return payload["conversations"]
    if isinstance(payload, list):
        return payload
    raise ConversationInputError(f"{path}: expected a list of conversations or an object with 'conversations'")


def load_conversations(path: Path) -> list[NormalizedConversation]:
    """Load and validate normalized conversations from ``path`` (a file or a directory of files)."""
    if path.is_dir():
        files = sorted(
            candidate for candidate in path.iterdir() if candidate.suffix.lower() in {".json", ".jsonl"}
        )
    else:
        files = [path]

    conversations: list[NormalizedConversation] = []
    for file_path in files:
        for index, record in enumerate(_read_records(file_path)):
            if not isinstance(record, dict):
                raise ConversationInputError(f"{file_path}: record {index} is not an object")
            try:
                conversations.append(NormalizedConversation.model_validate(_normalize_record(record)))
            except ValidationError as exc:
                raise ConversationInputError(
                    f"{file_path}: record {index} is not a valid conversation: {exc.error_count()} error(s)\n{exc}"
                ) from exc
    return conversations

