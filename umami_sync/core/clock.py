"""Time helpers. The engine works in naive UTC datetimes throughout."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    """Epoch milliseconds, the unit the Umami API expects for startAt/endAt."""
    return int(as_naive_utc(value).replace(tzinfo=timezone.utc).timestamp() * 1000)


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or epoch ms into naive UTC."""
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        return as_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"Invalid timestamp: {value!r}")
