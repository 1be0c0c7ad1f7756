"""Attendance sessions driven by zone containment.

One tracker serves every kind of zone-owning entity (vehicles, workers,
day-laborers): anything with an ``id`` and a ``zone`` satisfies ``ZoneOwner``.

Per entity and day the session goes ``pending -> in_progress -> completed``:

- an in-zone observation sets ``entry_time`` if it is unset or still the
  midnight placeholder, and marks the session in progress;
- an out-of-zone observation at least ``exit_grace_minutes`` after
  ``entry_time`` closes an in-progress session;
- every observation adds the time since the previous one to the in-zone or
  out-of-zone total, even after the session is closed, and recomputes the
  attendance efficiency against the expected work hours.

A completed session is never reopened on the same day.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Protocol

from .config import PresenceConfig
from .errors import OutOfOrderPointError
from .geo import Zone
from .models import AttendanceSession, GpsPoint, SessionStatus, seconds_between
from .storage import SessionStore

logger = logging.getLogger(__name__)


class ZoneOwner(Protocol):
    """Anything that owns a boundary zone: a vehicle, a worker, a day-laborer."""

    @property
    def id(self) -> str:
        ...

    @property
    def zone(self) -> Optional[Zone]:
        ...


def attendance_efficiency(in_zone_seconds: int, expected_work_hours: float) -> float:
    """In-zone time as a percentage of the expected work time, to 2 decimals."""
    expected_seconds = expected_work_hours * 3600
    if expected_seconds <= 0:
        return 0.0
    return round(in_zone_seconds / expected_seconds * 100, 2)


def apply_observation(session: AttendanceSession, inside: bool, timestamp: datetime,
                      exit_grace: timedelta, expected_work_hours: float = 0.0) -> AttendanceSession:
    """Return *session* advanced by one observation. The input is not modified.

    Raises:
        OutOfOrderPointError: *timestamp* is before the last observation.
    """
    if session.last_observed_at is not None and timestamp < session.last_observed_at:
        raise OutOfOrderPointError(session.entity_id, session.last_observed_at, timestamp)

    updated = replace(session)

    if not updated.is_closed:
        if inside:
            if updated.entry_time is None or updated.has_placeholder_entry:
                updated.entry_time = timestamp
                updated.entry_is_placeholder = False
                updated.status = SessionStatus.IN_PROGRESS
        elif (updated.status is SessionStatus.IN_PROGRESS
              and updated.entry_time is not None
              and timestamp - updated.entry_time >= exit_grace):
            updated.exit_time = timestamp
            updated.status = SessionStatus.COMPLETED

    # duration accounting runs on every observation
    if updated.last_observed_at is not None:
        elapsed = seconds_between(updated.last_observed_at, timestamp)
        if inside:
            updated.in_zone_seconds += elapsed
        else:
            updated.out_zone_seconds += elapsed
    updated.last_observed_at = timestamp
    updated.efficiency = attendance_efficiency(updated.in_zone_seconds, expected_work_hours)
    return updated


class PresenceSessionTracker:
    """Turns (point, containment) observations into persisted attendance sessions.

    Each observation is an atomic read-modify-write: the new session is
    computed on a copy and saved with compare-and-swap, so a losing racer gets
    ``PersistenceConflictError`` and nothing is applied.
    """

    def __init__(self, store: SessionStore, config: Optional[PresenceConfig] = None):
        self.store = store
        self.config = config or PresenceConfig()
        self.exit_grace = timedelta(minutes=self.config.exit_grace_minutes)

    def observe(self, entity_id: str, point: GpsPoint, zone: Optional[Zone],
                timestamp: Optional[datetime] = None,
                expected_work_hours: Optional[float] = None) -> Optional[AttendanceSession]:
        """Record one observation for *entity_id*.

        Args:
            entity_id: Owner of the session.
            point: The GPS fix.
            zone: Boundary to test the fix against.
            timestamp: Observation time; defaults to the fix time.
            expected_work_hours: Work hours expected of the entity that day;
                defaults to ``presence.expected_work_hours``.

        Returns:
            The saved session, or None when the entity has no usable zone.

        Raises:
            OutOfOrderPointError: Observation earlier than the last one.
            PersistenceConflictError: Another writer saved the session first.
        """
        if zone is None or zone.is_empty:
            logger.warning("No boundary zone for entity %s; observation skipped", entity_id)
            return None

        timestamp = timestamp or point.timestamp
        inside = zone.contains_point(point)
        day = timestamp.date()

        session = self.store.load_session(entity_id, day)
        if session is None:
            session = AttendanceSession(entity_id=entity_id, day=day)
        if expected_work_hours is None:
            expected_work_hours = self.config.expected_work_hours
        updated = apply_observation(session, inside, timestamp, self.exit_grace, expected_work_hours)
        saved = self.store.save_session(updated, expected_version=session.version)

        if saved.status is not session.status:
            if saved.status is SessionStatus.IN_PROGRESS:
                logger.info("Entity %s entered zone at %s", entity_id, saved.entry_time)
            elif saved.status is SessionStatus.COMPLETED:
                logger.info("Entity %s left zone; session closed at %s", entity_id, saved.exit_time)
        return saved

    def observe_owner(self, owner: ZoneOwner, point: GpsPoint,
                      timestamp: Optional[datetime] = None,
                      expected_work_hours: Optional[float] = None) -> Optional[AttendanceSession]:
        return self.observe(owner.id, point, owner.zone, timestamp, expected_work_hours)
