"""Locate provider exports under an input path and unpack zip archives safely."""

from __future__ import annotations

import json
import re
import subprocess
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from reclaw.core.errors import ArchiveError
from reclaw.core.runner import ProcessRunner, SubprocessRunner
from reclaw.storage.models import ALL_PROVIDERS, Provider

ZIP_SCAN_MAX_DEPTH = 3
GROK_SCAN_MAX_DEPTH = 8
GROK_BACKEND_FILE = "prod-grok-backend.json"
LIST_TIMEOUT_SECONDS = 30.0
EXTRACT_TIMEOUT_SECONDS = 180.0

_CHATGPT_HINT_FILES = ("/chat.html", "/message_feedback.json", "/shared_conversations.json")
_CLAUDE_HINT_FILES = ("/memories.json", "/projects.json", "/users.json")
_DRIVE_PREFIX_RE = re.compile(r"^[a-z]:/", re.IGNORECASE)
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-z0-9._-]")
_DASH_RUN_RE = re.compile(r"-+")
_SLASH_RUN_RE = re.compile(r"/+")


@dataclass
class PreparedInputSources:
    detected_providers: list[Provider] = field(default_factory=list)
    parse_candidates: dict[Provider, list[Path]] = field(default_factory=dict)
    extracted_archive_count: int = 0
    warnings: list[str] = field(default_factory=list)
    extraction_root: Path | None = None


def _normalize(path: str | Path) -> str:
    return str(path).replace("\\", "/").lower()


def is_zip_path(path: str | Path) -> bool:
    return _normalize(path).endswith(".zip")


def is_unsafe_entry(entry: str) -> bool:
    """Absolute, drive-qualified or parent-relative archive entries are unsafe."""
    normalized = _SLASH_RUN_RE.sub("/", _normalize(entry))
    if normalized.startswith("/") or _DRIVE_PREFIX_RE.match(normalized):
        return True
    return ".." in normalized.split("/")


def assert_safe_entries(entries: list[str], zip_path: Path) -> None:
    for entry in entries:
        if is_unsafe_entry(entry):
            raise ArchiveError(f"archive contains unsafe path '{entry}'")
    if not entries:
        raise ArchiveError(f"archive has no readable entries ({zip_path})")


def providers_from_entries(entries: list[str]) -> list[Provider]:
    normalized = ["/" + _normalize(entry.replace("//", "/")).lstrip("/") for entry in entries]

    def any_endswith(suffixes: tuple[str, ...]) -> bool:
        return any(entry.endswith(suffixes) for entry in normalized)

    providers: list[Provider] = []
    if any_endswith((f"/{GROK_BACKEND_FILE}",)):
        providers.append(Provider.GROK)
    if any("/chatgpt/" in entry for entry in normalized) or any_endswith(_CHATGPT_HINT_FILES):
        providers.append(Provider.CHATGPT)
    if any("/claude/" in entry for entry in normalized) or any_endswith(_CLAUDE_HINT_FILES):
        providers.append(Provider.CLAUDE)
    return providers


def provider_from_conversations_json(file_path: Path) -> Provider | None:
    """Sniff a bare conversations.json export by the keys of its first record."""
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, list):
        return None

    first = next((entry for entry in payload if isinstance(entry, dict)), None)
    if first is None:
        return None
    if {"mapping", "current_node", "default_model_slug"} & first.keys():
        return Provider.CHATGPT
    if {"chat_messages", "uuid"} & first.keys():
        return Provider.CLAUDE
    return None


def provider_from_file(file_path: Path) -> Provider | None:
    if not file_path.is_file():
        return None
    normalized = _normalize(file_path.resolve())
    if normalized.endswith(f"/{GROK_BACKEND_FILE}"):
        return Provider.GROK
    if not normalized.endswith("/conversations.json"):
        return None
    if "/chatgpt/" in normalized:
        return Provider.CHATGPT
    if "/claude/" in normalized:
        return Provider.CLAUDE
    return provider_from_conversations_json(file_path)


def find_files(
    root: Path,
    max_depth: int,
    predicate: Callable[[str], bool],
    *,
    first_only: bool = False,
) -> list[Path]:
    """Depth-limited walk returning files whose name satisfies ``predicate``."""
    if not root.is_dir():
        return []
    matches: list[Path] = []
    stack: list[tuple[Path, int]] = [(root, 0)]
    while stack:
        current, depth = stack.pop()
        if depth > max_depth:
            continue
        try:
            entries = sorted(current.iterdir())
        except OSError:
            continue
        for entry in entries:
            if entry.name == ".DS_Store":
                continue
            if entry.is_file() and predicate(entry.name):
                matches.append(entry)
                if first_only:
                    return matches
            elif entry.is_dir():
                stack.append((entry, depth + 1))
    return matches


def providers_from_directory(root: Path) -> list[Provider]:
    providers: list[Provider] = []
    for provider in (Provider.CHATGPT, Provider.CLAUDE):
        candidates = (root / provider.value / "conversations.json", root / "conversations.json")
        if any(provider_from_file(candidate) == provider for candidate in candidates):
            providers.append(provider)

    def is_grok_backend(name: str) -> bool:
        return name == GROK_BACKEND_FILE

    if (
        find_files(root / "grok", GROK_SCAN_MAX_DEPTH, is_grok_backend, first_only=True)
        or ("grok" in root.name.lower() and find_files(root, GROK_SCAN_MAX_DEPTH, is_grok_backend, first_only=True))
        or (root / GROK_BACKEND_FILE).is_file()
    ):
        providers.append(Provider.GROK)
    return providers


def safe_archive_dir_name(zip_path: Path, index: int) -> str:
    base = zip_path.name[:-4] if is_zip_path(zip_path.name) else zip_path.name
    safe = _DASH_RUN_RE.sub("-", _UNSAFE_NAME_CHARS_RE.sub("-", base.lower())).strip("-")[:72]
    return f"{index + 1:02d}-{safe or f'archive-{index + 1}'}"


class ArchiveInspector:
    """Lists and extracts zip archives with the ``unzip`` tool."""

    def __init__(self, runner: ProcessRunner | None = None, binary: str = "unzip"):
        self.runner = runner or SubprocessRunner()
        self.binary = binary

    def _run(self, args: list[str], timeout: float, action: str, zip_path: Path) -> str:
        try:
            result = self.runner.run(self.binary, args, timeout=timeout)
        except FileNotFoundError as exc:
            raise ArchiveError(f"Could not {action} zip archives because `{self.binary}` was not found on PATH.") from exc
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ArchiveError(f"Could not {action} zip archive '{zip_path}': {exc}") from exc
        if not result.ok:
            raise ArchiveError(f"Could not {action} zip archive '{zip_path}': {result.detail()}")
        return result.stdout

    def list_entries(self, zip_path: Path) -> list[str]:
        stdout = self._run(["-Z", "-1", str(zip_path)], LIST_TIMEOUT_SECONDS, "inspect", zip_path)
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    def detect_providers(self, zip_path: Path, warnings: list[str]) -> list[Provider]:
        """Providers hinted at by a safe archive's listing. Unsafe archives add a warning."""
        try:
            entries = self.list_entries(zip_path)
            assert_safe_entries(entries, zip_path)
        except ArchiveError as exc:
            warnings.append(f"Skipping archive '{zip_path}': {exc}")
            return []
        return providers_from_entries(entries)

    def extract(self, zip_path: Path, extraction_root: Path, index: int) -> Path:
        target_dir = extraction_root / safe_archive_dir_name(zip_path, index)
        target_dir.mkdir(parents=True, exist_ok=True)
        self._run(["-oq", str(zip_path), "-d", str(target_dir)], EXTRACT_TIMEOUT_SECONDS, "extract", zip_path)
        return target_dir


def prepare_input_sources(
    input_path: Path,
    runner: ProcessRunner | None = None,
    *,
    temp_dir: Path | None = None,
) -> PreparedInputSources:
    """Detect providers under ``input_path`` and unpack archives that add missing ones."""
    inspector = ArchiveInspector(runner)
    prepared = PreparedInputSources(parse_candidates={provider: [] for provider in ALL_PROVIDERS})
    detected: set[Provider] = set()

    def add(provider: Provider, candidate: Path) -> None:
        detected.add(provider)
        if candidate not in prepared.parse_candidates[provider]:
            prepared.parse_candidates[provider].append(candidate)

    def new_extraction_root() -> Path:
        if temp_dir is not None:
            temp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="reclaw-extracts-", dir=temp_dir))

    if input_path.is_file():
        provider = provider_from_file(input_path)
        if provider is not None:
            add(provider, input_path)

        if is_zip_path(input_path):
            zip_providers = inspector.detect_providers(input_path, prepared.warnings)
            if zip_providers:
                try:
                    prepared.extraction_root = new_extraction_root()
                    extracted = inspector.extract(input_path, prepared.extraction_root, 0)
                except ArchiveError as exc:
                    prepared.warnings.append(f"Skipping archive '{input_path}': {exc}")
                else:
                    prepared.extracted_archive_count += 1
                    for provider in zip_providers:
                        add(provider, extracted)
    else:
        for provider in providers_from_directory(input_path):
            add(provider, input_path)

        zip_files = sorted(find_files(input_path, ZIP_SCAN_MAX_DEPTH, is_zip_path))
        detections = [(zip_path, inspector.detect_providers(zip_path, prepared.warnings)) for zip_path in zip_files]
        missing = [provider for provider in ALL_PROVIDERS if provider not in detected]
        useful = [
            (zip_path, providers)
            for zip_path, providers in detections
            if any(provider in missing for provider in providers)
        ]
        if useful:
            prepared.extraction_root = new_extraction_root()
            index = 0
            for zip_path, providers in useful:
                try:
                    extracted = inspector.extract(zip_path, prepared.extraction_root, index)
                except ArchiveError as exc:
                    prepared.warnings.append(f"Skipping archive '{zip_path}': {exc}")
                    continue
                prepared.extracted_archive_count += 1
                index += 1
                for provider in providers:
                    add(provider, extracted)

    for provider in ALL_PROVIDERS:
        if not prepared.parse_candidates[provider]:
            prepared.parse_candidates[provider].append(input_path)

    prepared.detected_providers = [provider for provider in ALL_PROVIDERS if provider in detected]
    return prepared
