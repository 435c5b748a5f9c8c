from __future__ import annotations

import json
from pathlib import Path

import pytest

from reclaw.core.errors import ArchiveError
from reclaw.core.runner import CommandResult
from reclaw.ingest.discovery import (
    assert_safe_entries,
    is_unsafe_entry,
    prepare_input_sources,
    provider_from_conversations_json,
    providers_from_directory,
    providers_from_entries,
    safe_archive_dir_name,
)
from reclaw.storage.models import Provider


class FakeUnzip:
    """Serves archive listings and "extracts" them by touching every listed file."""

    def __init__(self, listings: dict[str, list[str]]):
        self.listings = listings
        self.extracted: list[str] = []

    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        if args[:2] == ["-Z", "-1"]:
            return CommandResult(0, "\n".join(self.listings[Path(args[2]).name]) + "\n")
        if args[0] == "-oq":
            zip_name = Path(args[1]).name
            target = Path(args[3])
            self.extracted.append(zip_name)
            for entry in self.listings[zip_name]:
                if entry.endswith("/"):
                    continue
                path = target / entry
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text("[]")
            return CommandResult(0)
        return CommandResult(1, stderr="unexpected")


class MissingUnzip:
    def run(self, command: str, args: list[str], *, timeout: float | None = None) -> CommandResult:
        raise FileNotFoundError(command)


def _touch(path: Path, content: str = "[]") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def test_directory_layout_plus_archive_for_missing_provider(tmp_path: Path) -> None:
    export = tmp_path / "export"
    _touch(export / "chatgpt" / "conversations.json")
    _touch(export / "claude-data.zip", "")
    _touch(export / "chatgpt-again.zip", "")
    runner = FakeUnzip(
        {
            "claude-data.zip": ["claude/", "claude/conversations.json", "claude/users.json"],
            "chatgpt-again.zip": ["chat.html", "conversations.json"],
        }
    )

    prepared = prepare_input_sources(export, runner, temp_dir=tmp_path / "tmp")

    assert prepared.detected_providers == [Provider.CHATGPT, Provider.CLAUDE]
    assert runner.extracted == ["claude-data.zip"]
    assert prepared.extracted_archive_count == 1
    assert prepared.extraction_root is not None
    assert prepared.parse_candidates[Provider.CHATGPT] == [export]
    assert prepared.parse_candidates[Provider.CLAUDE] == [prepared.extraction_root / "01-claude-data"]
    assert prepared.parse_candidates[Provider.GROK] == [export]
    assert prepared.warnings == []


def test_unsafe_archive_is_skipped_with_a_warning(tmp_path: Path) -> None:
    _touch(tmp_path / "evil.zip", "")
    runner = FakeUnzip({"evil.zip": ["claude/conversations.json", "../outside.txt"]})

    prepared = prepare_input_sources(tmp_path, runner, temp_dir=tmp_path / "tmp")

    assert prepared.detected_providers == []
    assert runner.extracted == []
    assert prepared.extraction_root is None
    assert len(prepared.warnings) == 1
    assert "unsafe path '../outside.txt'" in prepared.warnings[0]


def test_single_zip_input_is_extracted(tmp_path: Path) -> None:
    archive = _touch(tmp_path / "grok.zip", "")
    runner = FakeUnzip({"grok.zip": ["export/prod-grok-backend.json"]})

    prepared = prepare_input_sources(archive, runner, temp_dir=tmp_path / "tmp")

    assert prepared.detected_providers == [Provider.GROK]
    assert prepared.parse_candidates[Provider.GROK] == [prepared.extraction_root / "01-grok"]
    assert prepared.parse_candidates[Provider.CHATGPT] == [archive]


def test_missing_unzip_becomes_a_warning(tmp_path: Path) -> None:
    _touch(tmp_path / "export.zip", "")

    prepared = prepare_input_sources(tmp_path, MissingUnzip(), temp_dir=tmp_path / "tmp")

    assert prepared.detected_providers == []
    assert "was not found on PATH" in prepared.warnings[0]


def test_unsafe_entry_rules() -> None:
    assert is_unsafe_entry("/etc/passwd")
    assert is_unsafe_entry("C:/Windows/evil.dll")
    assert is_unsafe_entry("a/../../b")
    assert is_unsafe_entry("a\\..\\b")
    assert not is_unsafe_entry("claude/conversations.json")
    assert not is_unsafe_entry("notes..txt")

    with pytest.raises(ArchiveError, match="no readable entries"):
        assert_safe_entries([], Path("empty.zip"))


def test_providers_from_entries() -> None:
    assert providers_from_entries(["Export/ChatGPT/conversations.json"]) == [Provider.CHATGPT]
    assert providers_from_entries(["users.json", "conversations.json"]) == [Provider.CLAUDE]
    assert providers_from_entries(["a/b/prod-grok-backend.json", "message_feedback.json"]) == [
        Provider.GROK,
        Provider.CHATGPT,
    ]
    assert providers_from_entries(["readme.txt"]) == []


def test_bare_conversations_json_is_sniffed(tmp_path: Path) -> None:
    chatgpt = _touch(tmp_path / "a" / "conversations.json", json.dumps([{"mapping": {}, "current_node": "n1"}]))
    claude = _touch(tmp_path / "b" / "conversations.json", json.dumps([{"uuid": "u1", "chat_messages": []}]))
    empty = _touch(tmp_path / "c" / "conversations.json", "[]")
    broken = _touch(tmp_path / "d" / "conversations.json", "{")

    assert provider_from_conversations_json(chatgpt) == Provider.CHATGPT
    assert provider_from_conversations_json(claude) == Provider.CLAUDE
    assert provider_from_conversations_json(empty) is None
    assert provider_from_conversations_json(broken) is None
    assert providers_from_directory(tmp_path / "b") == [Provider.CLAUDE]


def test_grok_backend_is_found_in_nested_grok_folder(tmp_path: Path) -> None:
    _touch(tmp_path / "grok" / "export" / "data" / "prod-grok-backend.json", "{}")

    assert providers_from_directory(tmp_path) == [Provider.GROK]


def test_archive_directory_names_are_sanitized() -> None:
    assert safe_archive_dir_name(Path("My Export (1).zip"), 0) == "01-my-export-1"
    assert safe_archive_dir_name(Path("!!!.zip"), 2) == "03-archive-3"
