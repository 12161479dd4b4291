from datetime import datetime, timedelta, timezone

ONE_MILLISECOND = timedelta(milliseconds=1)


def utcnow() -> datetime:
    # Millisecond precision, which is what the document store keeps.
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
