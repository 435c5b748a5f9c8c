"""Claim-cleaning policy for subagent summaries.

The heuristics here are tuned against observed model output and are expected to
change; callers only rely on ``sanitize_summary`` and the ``is_*`` predicates.
"""

from __future__ import annotations

import re

from reclaw.extract.signals import split_summary_lines

MAX_SUMMARY_LINES = 8
MAX_CLAIM_CHARS = 220
MIN_CLIP_BOUNDARY = 120

SUMMARY_TAG_ALIASES: dict[str, str] = {
    "decision": "Decision",
    "decisions": "Decision",
    "project": "Project",
    "projects": "Project",
    "fact": "Fact",
    "facts": "Fact",
    "preference": "Preference",
    "preferences": "Preference",
    "person": "Person",
    "people": "Person",
    "interest": "Interest",
    "interests": "Interest",
    "todo": "Todo",
    "open": "Todo",
    "next": "Todo",
    "followup": "Todo",
    "follow-up": "Todo",
}

SUMMARY_TAG_PRIORITY: dict[str, int] = {
    "Decision": 0,
    "Project": 1,
    "Fact": 2,
    "Preference": 3,
    "Person": 4,
    "Interest": 5,
    "Todo": 6,
}

_BOLD_TAG_RE = re.compile(r"^\*\*([a-zA-Z-]+)\*\*\s*:\s*")
_WHITESPACE_RE = re.compile(r"\s+")
_TAGGED_RE = re.compile(r"^([a-zA-Z-]+)\s*:\s*(.+)$")
_UNKNOWN_LABEL_RE = re.compile(r"^[a-zA-Z][a-zA-Z\s-]{0,48}:")
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_CODE_RE = re.compile(r"`([^`]+)`")

_META_LABEL_RE = re.compile(
    r"^(summary|analysis|reason|reasoning|signal distilled|key signal|memory extraction complete)\s*:"
)
_PATH_RE = re.compile(r"/users/|\.json\b|reclaw-extract-output|\.memory-extract")
_META_PHRASE_RE = re.compile(
    r"done\b|saved to|main reclaw process|hard memory filter|would i need to know this person"
    r"|general knowledge|one-off|no durable user-specific|no user-specific|does not meet.*filter|filtered out"
)
_OPEN_BRACKET_END_RE = re.compile(r"[(\[{]\s*$")
_CUT_WORD_END_RE = re.compile(
    r"\b(prese|approac|decis|criter|integra|signif|durab|proces|answ|req)\s*$", re.IGNORECASE
)
_DANGLING_WORD_END_RE = re.compile(r"\b(and|or|to|for|with|from|in|on|at|by|vs)\s*$", re.IGNORECASE)


def normalize_candidate(value: str) -> str:
    normalized = _BOLD_TAG_RE.sub(r"\1: ", value.strip())
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def to_tagged_claim(line: str) -> tuple[str, str] | None:
    """Resolve a line to ``(Tag, value)``.

    Untagged lines are facts. Lines with an unknown ``label:`` prefix are rejected.
    """
    match = _TAGGED_RE.match(line)
    if match:
        tag = SUMMARY_TAG_ALIASES.get(match.group(1).strip().lower())
        if tag is None:
            return None
        return tag, match.group(2).strip()

    if _UNKNOWN_LABEL_RE.match(line):
        return None
    return "Fact", line.strip()


def clean_claim_value(value: str) -> str:
    cleaned = _BOLD_RE.sub(r"\1", value.strip())
    cleaned = _CODE_RE.sub(r"\1", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()

    if len(cleaned) > MAX_CLAIM_CHARS:
        clipped = cleaned[:MAX_CLAIM_CHARS]
        boundary = clipped.rfind(" ")
        cleaned = (clipped[:boundary] if boundary > MIN_CLIP_BOUNDARY else clipped).strip()
    return cleaned


def is_blocked_text(value: str) -> bool:
    normalized = value.strip().lower()
    if not normalized:
        return True
    if _META_LABEL_RE.search(normalized) or _PATH_RE.search(normalized):
        return True
    return bool(_META_PHRASE_RE.search(normalized))


def has_balanced_markers(value: str) -> bool:
    if value.count("**") % 2 != 0:
        return False
    return (
        value.count("(") == value.count(")")
        and value.count("[") == value.count("]")
        and value.count("{") == value.count("}")
    )


def is_likely_truncated(value: str) -> bool:
    if _OPEN_BRACKET_END_RE.search(value) or _CUT_WORD_END_RE.search(value):
        return True
    return len(value) >= 100 and bool(_DANGLING_WORD_END_RE.search(value))


def is_acceptable_claim(value: str) -> bool:
    return (
        bool(value)
        and not is_blocked_text(value)
        and has_balanced_markers(value)
        and not is_likely_truncated(value)
    )


def sanitize_summary(raw_summary: str) -> str:
    """Reduce a raw summary to at most eight ``Tag: value`` lines, highest priority first."""
    normalized = raw_summary.replace("\r\n", "\n").strip()
    if not normalized:
        return ""

    accepted: dict[str, tuple[int, int, str]] = {}
    for candidate in split_summary_lines(normalized):
        prepared = normalize_candidate(candidate)
        if not prepared or is_blocked_text(prepared):
            continue

        tagged = to_tagged_claim(prepared)
        if tagged is None:
            continue
        tag, value = tagged

        cleaned = clean_claim_value(value)
        if not is_acceptable_claim(cleaned):
            continue

        line = f"{tag}: {cleaned}"
        key = line.lower()
        if key in accepted:
            continue
        accepted[key] = (SUMMARY_TAG_PRIORITY.get(tag, 99), len(accepted), line)

    ranked = sorted(accepted.values())
    return "\n".join(line for _, _, line in ranked[:MAX_SUMMARY_LINES])
