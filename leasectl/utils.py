import json
import re
from datetime import datetime, timezone, timedelta
from typing import Any, Optional, Union

from .errors import ValidationError

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValidationError on bad input or zero.
    """
    if not s:
        raise ValidationError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValidationError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValidationError("delay must be > 0 seconds")
    return total


# ---------- Time ----------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC string like '2026-10-19T09:12:34.123456Z'.

    Every stored timestamp goes through here so that string comparison in SQL
    matches chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Invalid ISO timestamp: {value!r} ({e})")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_datetime(value: Union[datetime, str]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        return parse_iso(value)
    raise ValidationError(f"Expected a datetime or ISO string, got {type(value).__name__}")


def iso_in(seconds: float, now: Optional[datetime] = None) -> str:
    """Return the UTC ISO time `seconds` after `now`."""
    return to_iso((now or utcnow()) + timedelta(seconds=seconds))


# ---------- JSON ----------
def dumps_json(value: Any, what: str = "value") -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{what} is not JSON serialisable: {e}")


def loads_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


def canonical_json(value: Any) -> str:
    """Key-order independent encoding; mapping keys are sorted at every depth.

    The value is first passed through a JSON round-trip, so non-string keys
    compare the way they are stored.
    """
    return json.dumps(json.loads(dumps_json(value)), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def json_values_equal(a: Any, b: Any) -> bool:
    return canonical_json(a) == canonical_json(b)
