from __future__ import annotations

from collections.abc import Iterable


def unique_strings(values: Iterable[str]) -> list[str]:
    """Trim, drop empties and dedupe case-insensitively, keeping the first spelling seen."""
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        normalized = value.strip()
        if not normalized:
            continue
        key = normalized.lower()
        if key in seen:
            continue
        seen.add(key)
        output.append(normalized)
    return output
