"""Timestamp helpers shared by the staleness trackers."""

from datetime import datetime, timezone
from typing import Any, Optional

DAY_SECONDS = 86400


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format as ISO-8601 with millisecond precision and a trailing Z."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utc_now())


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO string or epoch number into an aware datetime.

    Epoch numbers above 1e12 are treated as milliseconds. Returns None for
    anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def is_newer(candidate: Any, reference: Any) -> bool:
    """True when candidate is a parseable timestamp newer than reference.

    A missing reference counts as older than any valid candidate. Values that
    fail to parse fall back to plain string comparison.
    """
    cand = parse_ts(candidate)
    if cand is None:
        if candidate in (None, ""):
            return False
        return reference in (None, "") or str(candidate) > str(reference)
    ref = parse_ts(reference)
    if ref is None:
        return True
    return cand > ref
