"""Clock helpers.

Services call clock.utcnow() (module attribute lookup) so tests can pin
"now" with patch("payhook.clock.utcnow").
"""

from datetime import datetime, timezone


def utcnow():
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from SQLite.

    PostgreSQL returns aware datetimes for timestamptz columns; SQLite drops
    the offset on the way in.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
