"""Classify tagged summary lines into durable-memory signal buckets."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from reclaw.core.collections import unique_strings

SIGNAL_KEYS = ("interests", "projects", "facts", "preferences", "people", "decisions", "todo")

TAG_ALIASES: dict[str, str] = {
    "interest": "interests",
    "interests": "interests",
    "project": "projects",
    "projects": "projects",
    "fact": "facts",
    "facts": "facts",
    "preference": "preferences",
    "preferences": "preferences",
    "person": "people",
    "people": "people",
    "decision": "decisions",
    "decisions": "decisions",
    "open": "todo",
    "next": "todo",
    "todo": "todo",
    "followup": "todo",
    "follow-up": "todo",
}

_BULLET_PREFIX_RE = re.compile(r"^[-*•]\s+")
_NUMBER_PREFIX_RE = re.compile(r"^\d+\.\s+")
_TAGGED_LINE_RE = re.compile(r"^([a-zA-Z-]+)\s*:\s*(.+)$")


@dataclass
class SummarySignals:
    interests: list[str] = field(default_factory=list)
    projects: list[str] = field(default_factory=list)
    facts: list[str] = field(default_factory=list)
    preferences: list[str] = field(default_factory=list)
    people: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    todo: list[str] = field(default_factory=list)


def strip_list_prefix(value: str) -> str:
    stripped = _BULLET_PREFIX_RE.sub("", value.strip())
    return _NUMBER_PREFIX_RE.sub("", stripped).strip()


def split_summary_lines(summary: str) -> list[str]:
    """Split a summary into candidate claims on newlines and semicolons."""
    normalized = summary.replace("\r\n", "\n").strip()
    if not normalized:
        return []

    lines: list[str] = []
    for chunk in normalized.split("\n"):
        trimmed = strip_list_prefix(chunk)
        if not trimmed:
            continue
        if ";" in trimmed:
            parts = [strip_list_prefix(part) for part in trimmed.split(";")]
            parts = [part for part in parts if part]
            if len(parts) > 1:
                lines.extend(parts)
                continue
        lines.append(trimmed)
    return lines


def parse_tagged_line(line: str) -> tuple[str, str] | None:
    """Return ``(signal_key, value)`` for a recognised ``tag: value`` line."""
    match = _TAGGED_LINE_RE.match(line)
    if not match:
        return None
    key = TAG_ALIASES.get(match.group(1).strip().lower())
    value = match.group(2).strip()
    if key is None or not value:
        return None
    return key, value


def extract_signals(summary: str, *, allow_untagged_facts: bool = True) -> SummarySignals:
    buckets: dict[str, list[str]] = {key: [] for key in SIGNAL_KEYS}

    for line in split_summary_lines(summary):
        tagged = parse_tagged_line(line)
        if tagged is None:
            if allow_untagged_facts:
                buckets["facts"].append(line)
            continue
        key, value = tagged
        buckets[key].append(value)

    return SummarySignals(**{key: unique_strings(values) for key, values in buckets.items()})
