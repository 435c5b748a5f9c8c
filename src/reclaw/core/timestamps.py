from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

_EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are interpreted in the local timezone.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def format_iso(moment: datetime) -> str:
    """Render a datetime as a UTC ISO string with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    rendered = moment.astimezone(UTC).isoformat(timespec="milliseconds")
    return rendered.replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_iso(datetime.now(UTC))


def to_timestamp_ms(value: str | None) -> int | None:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return round(parsed.timestamp() * 1000)


def to_iso_timestamp(value: Any) -> str | None:
    """Normalize epoch numbers, ISO strings and legacy date wrappers to an ISO string.

    Wrapper objects look like ``{"$date": ...}`` or ``{"$numberLong": "..."}`` and may nest.
    Returns None for anything that cannot be interpreted as a point in time.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int | float):
        return _iso_from_epoch(float(value))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            parsed = parse_timestamp(text)
            return format_iso(parsed) if parsed is not None else None
        return _iso_from_epoch(number)

    if isinstance(value, dict):
        if "$numberLong" in value:
            return to_iso_timestamp(value["$numberLong"])
        if "$date" in value:
            return to_iso_timestamp(value["$date"])

    return None


def format_local_date(moment: datetime) -> str:
    return moment.astimezone().strftime("%Y-%m-%d")


def to_local_date_key(iso_like: str) -> str:
    parsed = parse_timestamp(iso_like)
    if parsed is None:
        return iso_like[:10]
    return format_local_date(parsed)


def _iso_from_epoch(number: float) -> str | None:
    if not math.isfinite(number):
        return None
    millis = number if abs(number) >= _EPOCH_MILLIS_THRESHOLD else number * 1000
    try:
        moment = datetime.fromtimestamp(math.trunc(millis) / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None
    return format_iso(moment)
