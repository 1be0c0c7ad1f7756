"""Exception types raised by the tracking engine."""

from datetime import date, datetime
from typing import Optional


class TrackingError(Exception):
    """Base class for all engine errors."""


class OutOfOrderPointError(TrackingError):
    """A point arrived with a timestamp earlier than its predecessor."""

    def __init__(self, entity_id: Optional[str], previous: datetime, current: datetime):
        self.entity_id = entity_id
        self.previous = previous
        self.current = current
        super().__init__(
            f"Point for {entity_id!r} at {current.isoformat()} "
            f"is earlier than previous point at {previous.isoformat()}"
        )


class PersistenceConflictError(TrackingError):
    """A compare-and-swap save lost a race; nothing was written."""

    def __init__(self, entity_id: str, day: date, message: str = "concurrent update"):
        self.entity_id = entity_id
        self.day = day
        super().__init__(f"{message} for {entity_id!r} on {day.isoformat()}")


class ConfigError(TrackingError):
    """Configuration file is missing or has invalid values."""
