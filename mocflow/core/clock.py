from datetime import date, datetime, timezone

# Numbers above this are treated as epoch milliseconds when displayed.
EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def date_from_epoch_millis(value: float) -> date:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
