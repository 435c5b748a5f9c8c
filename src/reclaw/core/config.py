"""``.reclaw/config.yaml`` loading.

A config file may name other YAML files under ``extends``; those are loaded
first (recursively) and the extending file's values win. A missing main file
means defaults, but a missing or malformed ``extends`` target is an error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from reclaw.core.errors import ConfigError
from reclaw.storage.models import ReclawConfig

DEFAULT_CONFIG_PATH = Path(".reclaw") / "config.yaml"


def merge_config_layers(lower: dict[str, Any], upper: dict[str, Any]) -> dict[str, Any]:
    """Nested sections merge key by key; scalars and lists in ``upper`` replace ``lower``."""
    merged = dict(lower)
    for key, value in upper.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config_layers(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_file(path: Path) -> dict[str, Any]:
    payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level, got {type(payload).__name__}")
    return payload


def extends_targets(data: dict[str, Any], source: Path) -> list[Path]:
    raw = data.get("extends") or []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not all(isinstance(item, str) and item.strip() for item in raw):
        raise ConfigError(f"{source}: 'extends' must be a path or a list of paths")

    targets: list[Path] = []
    for item in raw:
        path = Path(item).expanduser()
        if not path.is_absolute():
            path = source.parent / path
        targets.append(path.resolve())
    return targets


def _resolve_layers(path: Path, chain: tuple[Path, ...]) -> dict[str, Any]:
    if path in chain:
        cycle = " -> ".join(str(item) for item in (*chain, path))
        raise ConfigError(f"Config 'extends' cycle: {cycle}")
    if not path.is_file():
        raise ConfigError(f"{chain[-1]}: extended config not found: {path}")

    data = read_config_file(path)
    merged: dict[str, Any] = {}
    for target in extends_targets(data, path):
        merged = merge_config_layers(merged, _resolve_layers(target, (*chain, path)))
    return merge_config_layers(merged, data)


def load_config(config_path: Path | None = None) -> ReclawConfig:
    """Load and resolve a reclaw config.yaml with optional ``extends``."""
    main_path = (config_path or DEFAULT_CONFIG_PATH).expanduser().resolve()
    if not main_path.exists():
        return ReclawConfig()

    data = read_config_file(main_path)
    merged: dict[str, Any] = {}
    for target in extends_targets(data, main_path):
        merged = merge_config_layers(merged, _resolve_layers(target, (main_path,)))

    merged = merge_config_layers(merged, data)
    merged["extends"] = [str(target) for target in extends_targets(data, main_path)]
    return ReclawConfig.model_validate(merged)


def expand_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()
