"""Storage collaborators.

The engine never talks to a database itself; it depends on the protocols
below. In-memory implementations are provided for tests, the CLI and
embedding.
"""

import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from .errors import PersistenceConflictError
from .geo import Zone
from .models import AggregatedMetrics, AttendanceSession, GpsPoint

Clock = Callable[[], datetime]


class PointSource(Protocol):
    def fetch_points(self, entity_id: str, start: datetime, end: datetime) -> Iterator[GpsPoint]:
        """Points for *entity_id* in ``[start, end]`` in non-decreasing time order."""
        ...


class ZoneSource(Protocol):
    def fetch_zone(self, zone_id: str) -> Optional[Zone]:
        ...


class AggregateStore(Protocol):
    """Metrics per ``(entity_id, day, scope)``.

    ``scope`` is None for whole-day metrics and a zone or activity id for
    zone-scoped metrics, so the two never overwrite each other.
    """

    def load_aggregate(self, entity_id: str, day: date,
                       scope: Optional[str] = None) -> Optional[AggregatedMetrics]:
        ...

    def save_aggregate(self, entity_id: str, day: date, metrics: AggregatedMetrics,
                       scope: Optional[str] = None) -> None:
        ...


class SessionStore(Protocol):
    def load_session(self, entity_id: str, day: date) -> Optional[AttendanceSession]:
        ...

    def save_session(self, session: AttendanceSession, expected_version: int) -> AttendanceSession:
        """Save if the stored version equals *expected_version*.

        Returns the stored session with its new version.

        Raises:
            PersistenceConflictError: the stored version has moved on.
        """
        ...


# ----------------------------------------------------------------------
# In-memory implementations
# ----------------------------------------------------------------------

class InMemoryZoneSource:
    def __init__(self, zones: Optional[Dict[str, Zone]] = None):
        self._zones: Dict[str, Zone] = dict(zones or {})

    def add(self, zone: Zone) -> None:
        self._zones[zone.zone_id] = zone

    def fetch_zone(self, zone_id: str) -> Optional[Zone]:
        return self._zones.get(zone_id)


class InMemoryAggregateStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, date, Optional[str]], AggregatedMetrics] = {}

    def load_aggregate(self, entity_id: str, day: date,
                       scope: Optional[str] = None) -> Optional[AggregatedMetrics]:
        with self._lock:
            row = self._rows.get((entity_id, day, scope))
            return replace(row) if row is not None else None

    def save_aggregate(self, entity_id: str, day: date, metrics: AggregatedMetrics,
                       scope: Optional[str] = None) -> None:
        with self._lock:
            self._rows[(entity_id, day, scope)] = replace(metrics)


class InMemorySessionStore:
    """Versioned session store with compare-and-swap saves.

    Sessions handed out are copies, so a caller can mutate one freely and
    only a successful ``save_session`` makes the change visible.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, date], AttendanceSession] = {}

    def load_session(self, entity_id: str, day: date) -> Optional[AttendanceSession]:
        with self._lock:
            row = self._rows.get((entity_id, day))
            return replace(row) if row is not None else None

    def save_session(self, session: AttendanceSession, expected_version: int) -> AttendanceSession:
        key = (session.entity_id, session.day)
        with self._lock:
            current = self._rows.get(key)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise PersistenceConflictError(
                    session.entity_id, session.day,
                    f"version {expected_version} is stale (stored {current_version})",
                )
            stored = replace(session, version=current_version + 1)
            self._rows[key] = stored
            return replace(stored)

    def sessions(self) -> Dict[Tuple[str, date], AttendanceSession]:
        with self._lock:
            return {k: replace(v) for k, v in self._rows.items()}
