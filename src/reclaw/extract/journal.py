"""Zettelclaw journal merge.

Each date gets ``03 Journal/<date>.md`` with YAML frontmatter, ``## Log`` and
``## Todo`` bullet sections and, optionally, a ``---`` divider followed by a
``## Sessions`` footer. Merging only appends bullets that are not already
present and repairs older layouts in place. Files are rewritten only when the
merged text differs from what is on disk.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from reclaw.core.collections import unique_strings
from reclaw.core.timestamps import format_local_date, parse_timestamp
from reclaw.extract.filters import MAX_CLAIM_CHARS, has_balanced_markers, is_blocked_text, is_likely_truncated
from reclaw.extract.session_refs import collect_result_session_entries, collect_session_entries
from reclaw.extract.signals import extract_signals
from reclaw.storage.models import BatchExtractionResult

JOURNAL_FOLDER = "03 Journal"
LOG_HEADING = "## Log"
TODO_HEADING = "## Todo"
SESSIONS_HEADING = "## Sessions"
LEGACY_OPEN_HEADING = "## Open"
DIVIDER = "---"

_CLOCK_RE = re.compile(r"^(\d{2}):(\d{2})")
_WHITESPACE_RE = re.compile(r"\s+")
_INLINE_SIGNAL_PREFIX_RE = re.compile(
    r"^(?:\*\*)?(preference|project|fact|decision|interest|person|open|todo|next|followup|follow-up)(?:\*\*)?\s*:\s*",
    re.IGNORECASE,
)


def write_journal_artifacts(
    results: Sequence[BatchExtractionResult],
    vault_path: Path,
    *,
    include_session_footers: bool = True,
    today: str | None = None,
) -> list[str]:
    """Merge batch results into per-date journal files and return the files written."""
    journal_dir = vault_path / JOURNAL_FOLDER
    journal_dir.mkdir(parents=True, exist_ok=True)
    today = today or format_local_date(datetime.now().astimezone())

    by_date: dict[str, list[BatchExtractionResult]] = {}
    for result in results:
        by_date.setdefault(result.date, []).append(result)

    written: list[str] = []
    for date in sorted(by_date):
        date_results = by_date[date]
        if not any(result.extraction.summary.strip() for result in date_results):
            continue

        log_preview, todo_preview = collect_date_insights(date_results)
        if not include_session_footers and not log_preview and not todo_preview:
            continue

        file_path = journal_dir / f"{date}.md"
        if file_path.exists():
            content = file_path.read_text(encoding="utf-8")
            changed = False
        else:
            content = journal_template(date, today, include_session_footers)
            changed = True

        content, merged = merge_journal(content, date_results, include_session_footers=include_session_footers)
        if not (changed or merged):
            continue

        content = ensure_frontmatter_field(content, "updated", today)
        file_path.write_text(content.rstrip() + "\n", encoding="utf-8")
        written.append(str(file_path))

    return sorted(written)


def merge_journal(
    content: str,
    results: Sequence[BatchExtractionResult],
    *,
    include_session_footers: bool,
) -> tuple[str, bool]:
    """Repair the layout of ``content`` and append bullets for ``results``."""
    content, changed = ensure_daily_sections(content, include_session_footers)
    content, normalized = normalize_sections(content)
    changed = changed or normalized

    new_session_ids: set[str] = set()
    footer_entries: list[str] = []
    if include_session_footers:
        existing_ids = collect_session_ids(content)
        for entry in collect_session_entries(results):
            key = entry.id.lower()
            if key in existing_ids:
                continue
            existing_ids.add(key)
            new_session_ids.add(key)
            footer_entries.append(f"{entry.id} — {format_session_clock(entry.timestamp)}")

    if include_session_footers and not new_session_ids:
        return content, changed

    if include_session_footers:
        pending = [
            result
            for result in results
            if any(entry.id.lower() in new_session_ids for entry in collect_result_session_entries(result))
        ]
    else:
        pending = list(results)

    log_items, todo_items = collect_date_insights(pending)
    for heading, values in ((LOG_HEADING, log_items), (TODO_HEADING, todo_items)):
        content, appended = append_unique_bullets(content, heading, values, include_session_footers)
        changed = changed or appended

    if include_session_footers:
        content, appended = append_unique_bullets(content, SESSIONS_HEADING, footer_entries, True)
        changed = changed or appended

    return content, changed


def journal_template(date: str, updated: str, include_session_footers: bool) -> str:
    lines = [DIVIDER, "type: journal", "tags: [journals]", f"created: {date}", f"updated: {updated}", DIVIDER]
    if include_session_footers:
        lines.extend([DIVIDER, SESSIONS_HEADING, ""])
    return "\n".join(lines)


def collect_date_insights(results: Iterable[BatchExtractionResult]) -> tuple[list[str], list[str]]:
    """Log and Todo bullets for a date. Untagged summary lines are ignored."""
    log_items: list[str] = []
    todo_items: list[str] = []
    for result in results:
        signals = extract_signals(result.extraction.summary, allow_untagged_facts=False)
        log_items.extend(
            [
                *signals.decisions,
                *signals.facts,
                *signals.projects,
                *signals.people,
                *signals.preferences,
                *signals.interests,
            ]
        )
        todo_items.extend(signals.todo)
    return clean_journal_bullets(unique_strings(log_items)), clean_journal_bullets(unique_strings(todo_items))


def strip_inline_signal_prefix(value: str) -> str:
    output = value.strip()
    while True:
        stripped = _INLINE_SIGNAL_PREFIX_RE.sub("", output, count=1).strip()
        if stripped == output:
            return output
        output = stripped


def clean_journal_bullets(values: Iterable[str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        text = _WHITESPACE_RE.sub(" ", strip_inline_signal_prefix(value)).strip()
        if is_blocked_text(text) or not has_balanced_markers(text) or is_likely_truncated(text):
            continue
        if not text or len(text) > MAX_CLAIM_CHARS:
            continue
        cleaned.append(text)
    return unique_strings(cleaned)


def format_session_clock(timestamp: str | None) -> str:
    """``HH:MM`` in local time, or ``unknown``."""
    text = (timestamp or "").strip()
    if not text:
        return "unknown"
    direct = _CLOCK_RE.match(text)
    if direct:
        return f"{direct.group(1)}:{direct.group(2)}"
    parsed = parse_timestamp(text)
    if parsed is None:
        return "unknown"
    return parsed.astimezone().strftime("%H:%M")


def parse_session_id(value: str) -> str:
    normalized = value.strip()
    head, separator, _ = normalized.partition("—")
    return head.strip() if separator else normalized


def _normalize_bullet(value: str) -> str:
    return strip_inline_signal_prefix(value).strip().lower()


def _split_lines(content: str) -> list[str]:
    return content.replace("\r\n", "\n").split("\n")


def _join_lines(lines: list[str]) -> str:
    return "\n".join(lines).rstrip() + "\n"


def find_line(lines: Sequence[str], target: str) -> int | None:
    for index, line in enumerate(lines):
        if line.strip() == target:
            return index
    return None


def section_bounds(lines: Sequence[str], heading: str) -> tuple[int, int] | None:
    """Heading index and the index where the section ends (next divider or heading)."""
    start = find_line(lines, heading)
    if start is None:
        return None
    for index in range(start + 1, len(lines)):
        stripped = lines[index].strip()
        if stripped == DIVIDER or stripped.startswith("## "):
            return start, index
    return start, len(lines)


def _section_bullets(lines: Sequence[str], bounds: tuple[int, int]) -> list[str]:
    start, end = bounds
    return [line.strip()[2:] for line in lines[start + 1 : end] if line.strip().startswith("- ")]


def remove_section(lines: list[str], heading: str) -> bool:
    bounds = section_bounds(lines, heading)
    if bounds is None:
        return False
    start, end = bounds
    while start > 0 and not lines[start - 1].strip():
        start -= 1
    del lines[start:end]
    return True


def frontmatter_end(lines: Sequence[str]) -> int | None:
    if len(lines) < 2 or lines[0].strip() != DIVIDER:
        return None
    for index in range(1, len(lines)):
        if lines[index].strip() == DIVIDER:
            return index
    return None


def find_divider_before(lines: Sequence[str], index: int) -> int | None:
    """Index of a ``---`` directly above ``index``, skipping blank lines."""
    for line_index in range(index - 1, -1, -1):
        stripped = lines[line_index].strip()
        if not stripped:
            continue
        return line_index if stripped == DIVIDER else None
    return None


def _trim_trailing_blanks(lines: list[str]) -> None:
    while lines and not lines[-1].strip():
        lines.pop()


def _append_block(lines: list[str], block: list[str]) -> None:
    _trim_trailing_blanks(lines)
    if lines and len(lines) - 1 != frontmatter_end(lines):
        lines.append("")
    lines.extend(block)


def remove_trailing_divider(lines: list[str]) -> bool:
    fm_end = frontmatter_end(lines)
    for index in range(len(lines) - 1, -1, -1):
        stripped = lines[index].strip()
        if not stripped:
            continue
        if stripped != DIVIDER or index == fm_end:
            return False
        del lines[index]
        _trim_trailing_blanks(lines)
        return True
    return False


def strip_blank_lines_after_frontmatter(lines: list[str]) -> bool:
    if len(lines) < 3:
        return False
    fm_end = frontmatter_end(lines)
    if fm_end is None:
        return False
    changed = False
    while fm_end + 1 < len(lines) and not lines[fm_end + 1].strip():
        del lines[fm_end + 1]
        changed = True
    return changed


def ensure_sessions_footer(lines: list[str]) -> bool:
    sessions = find_line(lines, SESSIONS_HEADING)
    if sessions is None:
        _append_block(lines, [DIVIDER, SESSIONS_HEADING, ""])
        return True

    changed = False
    if find_divider_before(lines, sessions) is None:
        lines.insert(sessions, DIVIDER)
        sessions += 1
        changed = True
    if sessions + 1 >= len(lines) or lines[sessions + 1].strip():
        lines.insert(sessions + 1, "")
        changed = True
    return changed


def migrate_legacy_open_section(lines: list[str], include_session_footers: bool) -> bool:
    """Move bullets from an old ``## Open`` section into ``## Todo``."""
    bounds = section_bounds(lines, LEGACY_OPEN_HEADING)
    if bounds is None:
        return False

    legacy_values = _section_bullets(lines, bounds)
    remove_section(lines, LEGACY_OPEN_HEADING)
    if not legacy_values:
        return True

    merged, _ = append_unique_bullets("\n".join(lines) + "\n", TODO_HEADING, legacy_values, include_session_footers)
    merged_lines = _split_lines(merged)
    if merged_lines and merged_lines[-1] == "":
        merged_lines.pop()
    lines[:] = merged_lines
    return True


def ensure_daily_sections(content: str, include_session_footers: bool) -> tuple[str, bool]:
    lines = _split_lines(content)
    changed = strip_blank_lines_after_frontmatter(lines)
    changed = migrate_legacy_open_section(lines, include_session_footers) or changed

    if include_session_footers:
        changed = ensure_sessions_footer(lines) or changed
        sessions = find_line(lines, SESSIONS_HEADING)
        if sessions is not None:
            divider = find_divider_before(lines, sessions)
            if divider is None:
                lines.insert(sessions, DIVIDER)
                divider = sessions
                changed = True

            for heading in (LOG_HEADING, TODO_HEADING):
                bounds = section_bounds(lines, heading)
                if bounds is None or bounds[0] >= divider or _section_bullets(lines, bounds):
                    continue
                remove_section(lines, heading)
                changed = True
                sessions = find_line(lines, SESSIONS_HEADING)
                if sessions is None:
                    break
                divider = find_divider_before(lines, sessions)
                if divider is None:
                    lines.insert(sessions, DIVIDER)
                    divider = sessions
                    changed = True
    else:
        changed = remove_section(lines, SESSIONS_HEADING) or changed
        changed = remove_trailing_divider(lines) or changed
        for heading in (LOG_HEADING, TODO_HEADING):
            bounds = section_bounds(lines, heading)
            if bounds is None or _section_bullets(lines, bounds):
                continue
            remove_section(lines, heading)
            changed = True

    return _join_lines(lines), changed


def normalize_sections(content: str) -> tuple[str, bool]:
    """Re-clean existing Log/Todo bullets and drop sections left empty."""
    lines = _split_lines(content)
    changed = False

    for heading in (LOG_HEADING, TODO_HEADING):
        bounds = section_bounds(lines, heading)
        if bounds is None:
            continue
        bullets = clean_journal_bullets(_section_bullets(lines, bounds))
        if not bullets:
            remove_section(lines, heading)
            changed = True
            continue

        start, end = bounds
        replacement = [heading, *(f"- {value}" for value in bullets), ""]
        if lines[start:end] != replacement:
            lines[start:end] = replacement
            changed = True

    return _join_lines(lines), changed


def collect_session_ids(content: str) -> set[str]:
    lines = _split_lines(content)
    bounds = section_bounds(lines, SESSIONS_HEADING)
    if bounds is None:
        return set()
    ids = {parse_session_id(bullet).lower() for bullet in _section_bullets(lines, bounds)}
    ids.discard("")
    return ids


def _ensure_section_for_append(lines: list[str], heading: str, include_session_footers: bool) -> bool:
    if find_line(lines, heading) is not None:
        return False

    if heading == SESSIONS_HEADING:
        return ensure_sessions_footer(lines) if include_session_footers else False

    if not include_session_footers:
        _append_block(lines, [heading, ""])
        return True

    sessions = find_line(lines, SESSIONS_HEADING)
    if sessions is None:
        _append_block(lines, [DIVIDER, SESSIONS_HEADING, ""])
        sessions = find_line(lines, SESSIONS_HEADING)
    if sessions is None:
        return True

    divider = find_divider_before(lines, sessions)
    if divider is None:
        lines.insert(sessions, DIVIDER)
        divider = sessions

    if divider > 0 and lines[divider - 1].strip() and divider - 1 != frontmatter_end(lines):
        lines.insert(divider, "")
        divider += 1

    lines[divider:divider] = [heading, ""]
    return True


def append_unique_bullets(
    content: str,
    heading: str,
    values: Sequence[str],
    include_session_footers: bool,
) -> tuple[str, bool]:
    """Append ``values`` under ``heading``, skipping bullets that are already there.

    Content bullets are compared without their tag prefix. Session bullets are
    compared by the ``provider:id`` part before the em dash.
    """
    candidates = unique_strings(values)
    if not candidates:
        return content, False

    def bullet_key(value: str) -> str:
        if heading == SESSIONS_HEADING:
            return parse_session_id(value).lower()
        return _normalize_bullet(value)

    lines = _split_lines(content)
    changed = _ensure_section_for_append(lines, heading, include_session_footers)
    bounds = section_bounds(lines, heading)
    if bounds is None:
        return _join_lines(lines), changed

    start, end = bounds
    existing = {bullet_key(bullet) for bullet in _section_bullets(lines, bounds)}
    existing.discard("")

    # The Sessions heading keeps one blank line beneath it.
    floor = start + 2 if heading == SESSIONS_HEADING and start + 1 < end and not lines[start + 1].strip() else start + 1
    insert_at = end
    while insert_at > floor and not lines[insert_at - 1].strip():
        insert_at -= 1

    appended = False
    for value in candidates:
        key = bullet_key(value)
        if not key or key in existing:
            continue
        lines.insert(insert_at, f"- {value}")
        insert_at += 1
        existing.add(key)
        appended = True

    if not appended:
        return (_join_lines(lines), True) if changed else (content, False)

    if insert_at < len(lines) and lines[insert_at].strip():
        lines.insert(insert_at, "")
    return _join_lines(lines), True


def ensure_frontmatter_field(content: str, field: str, value: str) -> str:
    """Set ``field: value`` inside the leading YAML frontmatter, if there is one."""
    if not content.startswith("---\n"):
        return content
    end = content.find("\n---", 4)
    if end == -1:
        return content

    fm_lines = content[4:end].split("\n")
    body = content[end + 4 :]
    for index, line in enumerate(fm_lines):
        if line.startswith(f"{field}:"):
            fm_lines[index] = f"{field}: {value}"
            break
    else:
        fm_lines.append(f"{field}: {value}")
    return "---\n" + "\n".join(fm_lines) + "\n---" + body
