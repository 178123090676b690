"""ISO8601 timestamp helpers shared by the services."""

from datetime import UTC, datetime, timedelta
from typing import Any

from erpsync.errors import ValidationError


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO8601 timestamp into an aware UTC datetime.

    Accepts the trailing ``Z`` form and naive values (treated as UTC).
    Returns None for empty or unparsable input.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Format a datetime in the fixed-width storage form."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def cutoff_iso(days: int, now: datetime | None = None) -> str:
    """Return the storage-form timestamp ``days`` before now."""
    reference = now or datetime.now(UTC)
    return to_iso(reference - timedelta(days=days))


def whole_hours_between(start: datetime, end: datetime) -> int:
    """Elapsed whole hours from start to end (floored)."""
    return int((end - start).total_seconds() // 3600)


def validate_iso(value: Any, field: str) -> str | None:
    """Check a caller-supplied timestamp; None passes through.

    Raises:
        ValidationError: If the value is not a parsable ISO8601 string.
    """
    if value is None:
        return None
    if not isinstance(value, str) or parse_iso(value) is None:
        raise ValidationError(f"{field} must be an ISO8601 timestamp string", field=field)
    return value
