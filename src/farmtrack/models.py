"""Data models for GPS fixes, movement/stoppage details and zone sessions."""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

Coordinate = Tuple[float, float]
Polygon = List[Coordinate]


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from *start* to *end* (epoch-second difference)."""
    return int(end.timestamp()) - int(start.timestamp())


def format_duration(seconds: int) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours:02d}:{minutes:02d}:{seconds % 60:02d}"


@dataclass(frozen=True, slots=True)
class GpsPoint:
    """A single GPS fix for one tracked entity.

    Attributes:
        entity_id: Tracker / vehicle / worker identifier.
        timestamp: Timezone-aware fix time.
        latitude: Latitude in decimal degrees (NaN when unparsable).
        longitude: Longitude in decimal degrees (NaN when unparsable).
        speed: Reported speed in km/h.
        status: Device status, 1 = on, 0 = off.
    """

    entity_id: str
    timestamp: datetime
    latitude: float
    longitude: float
    speed: float = 0.0
    status: int = 0

    @property
    def coordinate(self) -> Coordinate:
        return self.latitude, self.longitude

    def with_speed(self, speed: float) -> "GpsPoint":
        return replace(self, speed=speed)

    def with_position(self, latitude: float, longitude: float) -> "GpsPoint":
        return replace(self, latitude=latitude, longitude=longitude)


@dataclass(frozen=True, slots=True)
class MovementSegment:
    """A closed run of moving points."""

    start_time: datetime
    end_time: datetime
    duration_seconds: int
    distance_km: float
    avg_speed: float
    start_location: Coordinate
    end_location: Coordinate


@dataclass(frozen=True, slots=True)
class StoppageInterval:
    """A closed run of stopped points.

    Intervals shorter than the stoppage threshold are kept with
    ``ignored=True``; their time is booked as movement.
    """

    start_time: datetime
    end_time: datetime
    duration_seconds: int
    duration_while_on: int
    duration_while_off: int
    location: Coordinate
    ignored: bool
    status_at_start: str = 'off'


@dataclass(frozen=True, slots=True)
class ZonePresenceSegment:
    """Maximal run of consecutive in-zone points, as stream indices."""

    start_index: int
    end_index: int


@dataclass(slots=True)
class AggregatedMetrics:
    """Accumulated movement/stoppage figures for one entity and window."""

    movement_distance_km: float = 0.0
    movement_duration_sec: int = 0
    stoppage_duration_sec: int = 0
    stoppage_duration_while_on: int = 0
    stoppage_duration_while_off: int = 0
    stoppage_count: int = 0
    ignored_stoppage_count: int = 0
    ignored_stoppage_duration_sec: int = 0
    device_on_time: Optional[datetime] = None
    first_movement_time: Optional[datetime] = None
    average_speed: float = 0.0
    max_speed: float = 0.0
    latest_status: Optional[int] = None
    total_records: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.total_records == 0

    def recompute_average_speed(self) -> None:
        if self.movement_duration_sec > 0:
            self.average_speed = self.movement_distance_km / (self.movement_duration_sec / 3600)
        else:
            self.average_speed = 0.0

    def merge(self, other: "AggregatedMetrics") -> "AggregatedMetrics":
        """Combine two aggregates into a new one.

        Sums distances, durations and counts; activation times take the
        earliest non-null value; latest status comes from whichever record
        ends later.
        """
        if other.is_empty:
            return replace(self)
        if self.is_empty:
            return replace(other)

        later = other if _later(other.end_time, self.end_time) else self
        merged = AggregatedMetrics(
            movement_distance_km=self.movement_distance_km + other.movement_distance_km,
            movement_duration_sec=self.movement_duration_sec + other.movement_duration_sec,
            stoppage_duration_sec=self.stoppage_duration_sec + other.stoppage_duration_sec,
            stoppage_duration_while_on=self.stoppage_duration_while_on + other.stoppage_duration_while_on,
            stoppage_duration_while_off=self.stoppage_duration_while_off + other.stoppage_duration_while_off,
            stoppage_count=self.stoppage_count + other.stoppage_count,
            ignored_stoppage_count=self.ignored_stoppage_count + other.ignored_stoppage_count,
            ignored_stoppage_duration_sec=(
                self.ignored_stoppage_duration_sec + other.ignored_stoppage_duration_sec
            ),
            device_on_time=_earliest(self.device_on_time, other.device_on_time),
            first_movement_time=_earliest(self.first_movement_time, other.first_movement_time),
            max_speed=max(self.max_speed, other.max_speed),
            latest_status=later.latest_status,
            total_records=self.total_records + other.total_records,
            start_time=_earliest(self.start_time, other.start_time),
            end_time=later.end_time,
        )
        merged.recompute_average_speed()
        return merged

    def to_dict(self) -> Dict[str, Any]:
        """Display form: km rounded to 3 decimals, durations also as HH:MM:SS."""
        return {
            'movement_distance_km': round(self.movement_distance_km, 3),
            'movement_distance_meters': round(self.movement_distance_km * 1000, 2),
            'movement_duration_seconds': self.movement_duration_sec,
            'movement_duration_formatted': format_duration(self.movement_duration_sec),
            'stoppage_duration_seconds': self.stoppage_duration_sec,
            'stoppage_duration_formatted': format_duration(self.stoppage_duration_sec),
            'stoppage_duration_while_on_seconds': self.stoppage_duration_while_on,
            'stoppage_duration_while_off_seconds': self.stoppage_duration_while_off,
            'stoppage_count': self.stoppage_count,
            'ignored_stoppage_count': self.ignored_stoppage_count,
            'ignored_stoppage_duration_seconds': self.ignored_stoppage_duration_sec,
            'device_on_time': _time_string(self.device_on_time),
            'first_movement_time': _time_string(self.first_movement_time),
            'average_speed': round(self.average_speed, 2),
            'max_speed': self.max_speed,
            'latest_status': self.latest_status,
            'total_records': self.total_records,
            'start_time': _time_string(self.start_time),
            'end_time': _time_string(self.end_time),
        }


def _earliest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _later(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None:
        return False
    if b is None:
        return True
    return a >= b


def _time_string(value: Optional[datetime]) -> Optional[str]:
    return value.strftime('%H:%M:%S') if value is not None else None


@dataclass(frozen=True, slots=True)
class SegmentationResult:
    """Metrics plus the movement and stoppage detail lists behind them."""

    metrics: AggregatedMetrics
    movements: List[MovementSegment] = field(default_factory=list)
    stoppages: List[StoppageInterval] = field(default_factory=list)


# ----------------------------------------------------------------------
# Attendance sessions
# ----------------------------------------------------------------------

class SessionStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


@dataclass(slots=True)
class AttendanceSession:
    """Per-entity, per-day presence session.

    Zone durations are accumulated in seconds and exposed as whole minutes.
    ``efficiency`` is in-zone time as a percentage of the expected work time,
    0 when no work time is expected. ``version`` is bumped by the store on
    every successful save.
    """

    entity_id: str
    day: date
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    in_zone_seconds: int = 0
    out_zone_seconds: int = 0
    status: SessionStatus = SessionStatus.PENDING
    last_observed_at: Optional[datetime] = None
    entry_is_placeholder: bool = False
    efficiency: float = 0.0
    version: int = 0

    @property
    def total_in_zone_duration_min(self) -> int:
        return self.in_zone_seconds // 60

    @property
    def total_out_zone_duration_min(self) -> int:
        return self.out_zone_seconds // 60

    @property
    def is_closed(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def has_placeholder_entry(self) -> bool:
        return self.entry_time is not None and self.entry_is_placeholder

    @classmethod
    def with_placeholder_entry(cls, entity_id: str, day: date, tzinfo=None) -> "AttendanceSession":
        """Session pre-created with a midnight entry that the first in-zone fix replaces."""
        return cls(entity_id=entity_id, day=day,
                   entry_time=datetime.combine(day, time.min, tzinfo=tzinfo),
                   entry_is_placeholder=True)


# ----------------------------------------------------------------------
# Scheduled activities
# ----------------------------------------------------------------------

class ActivityState(str, Enum):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    STOPPED = 'stopped'
    FINISHED = 'finished'
    NOT_DONE = 'not_done'


@dataclass(frozen=True, slots=True)
class ScheduledActivity:
    """A planned task for one entity on one day in a target zone."""

    activity_id: str
    entity_id: str
    day: date
    start_time: time
    end_time: time
    zone_id: Optional[str] = None
    status: ActivityState = ActivityState.NOT_STARTED

    def window(self, tzinfo=None) -> Tuple[datetime, datetime]:
        """Return ``[window_start, window_end)``; an end before start wraps past midnight."""
        start = datetime.combine(self.day, self.start_time, tzinfo=tzinfo)
        end = datetime.combine(self.day, self.end_time, tzinfo=tzinfo)
        if end < start:
            end += timedelta(days=1)
        return start, end


@dataclass(frozen=True, slots=True)
class ActivityStatus:
    activity_id: str
    status: ActivityState
    window_start: datetime
    window_end: datetime
