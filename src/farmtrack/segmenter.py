"""Movement / stoppage segmentation of a single entity's point stream.

The analysis is an explicit state machine with three phases::

    IDLE --moving--> MOVING <--> STOPPED
    IDLE --stopped-> STOPPED

``step`` is a pure transition function: it takes the machine state and a
pair of consecutive points and returns the next machine state plus a
``MetricsDelta``. ``MovementSegmenter`` folds the deltas into an
``AggregatedMetrics``. All bookkeeping lives in a ``SegmenterState`` so a
day can be analyzed batch by batch: feeding a prefix and then a suffix with
the carried state gives the same result as one pass over the whole stream.

Classification of a point:

- stopped: device off, or device on with speed exactly equal to the stop speed
- moving: device on with speed above the stop speed
- neutral: anything else (device on, crawling below the stop speed). Neutral
  points never cause a transition; they extend whichever run is open.

Stoppages shorter than ``min_stoppage_seconds`` are ignored: their time and
the straight-line distance across them are booked as movement.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple

from .config import ThresholdConfig
from .errors import OutOfOrderPointError
from .geo import distance_km
from .models import (
    AggregatedMetrics,
    GpsPoint,
    MovementSegment,
    SegmentationResult,
    StoppageInterval,
    seconds_between,
)

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    MOVING = "moving"
    STOPPED = "stopped"


class PointClass(Enum):
    MOVING = "moving"
    STOPPED = "stopped"
    NEUTRAL = "neutral"


def classify(point: GpsPoint, stop_speed: float = 2.0) -> PointClass:
    """Classify a point.

    ``speed == stop_speed`` is an exact comparison: a device reporting
    exactly the stop speed is stopped, anything slower with the device on is
    neutral.
    """
    if point.status == 0 or (point.status == 1 and point.speed == stop_speed):
        return PointClass.STOPPED
    if point.status == 1 and point.speed > stop_speed:
        return PointClass.MOVING
    return PointClass.NEUTRAL


@dataclass(frozen=True, slots=True)
class MachineState:
    """Transition state of the segmenter. Immutable; ``step`` returns a new one.

    Attributes:
        phase: Current phase.
        run_start: First point of the open movement run or stoppage.
        run_distance_km: Distance of the open movement run.
        stop_on_sec: Seconds of the open stoppage tagged device-on.
        stop_off_sec: Seconds of the open stoppage tagged device-off.
        consecutive_moving: Length of the current streak of moving points.
        streak_start: Timestamp of the first point of that streak.
    """

    phase: Phase = Phase.IDLE
    run_start: Optional[GpsPoint] = None
    run_distance_km: float = 0.0
    stop_on_sec: int = 0
    stop_off_sec: int = 0
    consecutive_moving: int = 0
    streak_start: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class MetricsDelta:
    """Change to the aggregate produced by one transition."""

    distance_km: float = 0.0
    movement_sec: int = 0
    stoppage_sec: int = 0
    stoppage_on_sec: int = 0
    stoppage_off_sec: int = 0
    stoppage_count: int = 0
    ignored_count: int = 0
    ignored_sec: int = 0
    device_on_time: Optional[datetime] = None
    first_movement_time: Optional[datetime] = None
    point: Optional[GpsPoint] = None
    movement: Optional[MovementSegment] = None
    stoppage: Optional[StoppageInterval] = None

    def apply(self, metrics: AggregatedMetrics) -> None:
        """Fold this delta into *metrics* in place."""
        metrics.movement_distance_km += self.distance_km
        metrics.movement_duration_sec += self.movement_sec
        metrics.stoppage_duration_sec += self.stoppage_sec
        metrics.stoppage_duration_while_on += self.stoppage_on_sec
        metrics.stoppage_duration_while_off += self.stoppage_off_sec
        metrics.stoppage_count += self.stoppage_count
        metrics.ignored_stoppage_count += self.ignored_count
        metrics.ignored_stoppage_duration_sec += self.ignored_sec
        if metrics.device_on_time is None and self.device_on_time is not None:
            metrics.device_on_time = self.device_on_time
        if metrics.first_movement_time is None and self.first_movement_time is not None:
            metrics.first_movement_time = self.first_movement_time
        if self.point is not None:
            p = self.point
            metrics.total_records += 1
            if p.speed > metrics.max_speed:
                metrics.max_speed = p.speed
            metrics.latest_status = p.status
            if metrics.start_time is None:
                metrics.start_time = p.timestamp
            metrics.end_time = p.timestamp
        metrics.recompute_average_speed()


# ----------------------------------------------------------------------
# Transition function
# ----------------------------------------------------------------------

def _movement_segment(start: GpsPoint, end: GpsPoint, distance: float) -> MovementSegment:
    duration = seconds_between(start.timestamp, end.timestamp)
    return MovementSegment(
        start_time=start.timestamp,
        end_time=end.timestamp,
        duration_seconds=duration,
        distance_km=distance,
        avg_speed=(distance / duration) * 3600 if duration > 0 else 0.0,
        start_location=start.coordinate,
        end_location=end.coordinate,
    )


def _close_stoppage(state: MachineState, end: GpsPoint,
                    thresholds: ThresholdConfig) -> dict:
    """Delta fields for a stoppage closing at *end*."""
    start = state.run_start
    duration = seconds_between(start.timestamp, end.timestamp)
    ignored = duration < thresholds.min_stoppage_seconds
    interval = StoppageInterval(
        start_time=start.timestamp,
        end_time=end.timestamp,
        duration_seconds=duration,
        duration_while_on=state.stop_on_sec,
        duration_while_off=state.stop_off_sec,
        location=start.coordinate,
        ignored=ignored,
        status_at_start='on' if start.status == 1 else 'off',
    )
    if ignored:
        return dict(
            movement_sec=duration,
            distance_km=distance_km(start.coordinate, end.coordinate),
            ignored_count=1,
            ignored_sec=duration,
            stoppage=interval,
        )
    return dict(
        stoppage_sec=duration,
        stoppage_on_sec=state.stop_on_sec,
        stoppage_off_sec=state.stop_off_sec,
        stoppage_count=1,
        stoppage=interval,
    )


def step(state: MachineState, prev: Optional[GpsPoint], curr: GpsPoint,
         thresholds: Optional[ThresholdConfig] = None) -> Tuple[MachineState, MetricsDelta]:
    """Advance the machine by one point.

    Args:
        state: Current machine state.
        prev: The point fed before *curr*, or None for the first point.
        curr: The new point.
        thresholds: Classification and stoppage thresholds.

    Returns:
        (new_state, delta). *state* is never modified.

    Raises:
        OutOfOrderPointError: *curr* is earlier than *prev*.
    """
    thresholds = thresholds or ThresholdConfig()
    if prev is not None and curr.timestamp < prev.timestamp:
        raise OutOfOrderPointError(curr.entity_id, prev.timestamp, curr.timestamp)

    kind = classify(curr, thresholds.stop_speed)

    # first-movement detection: N consecutive moving points, any other point re-arms
    if kind is PointClass.MOVING:
        streak = state.consecutive_moving + 1
        streak_start = state.streak_start if state.consecutive_moving else curr.timestamp
    else:
        streak, streak_start = 0, None
    first_movement = streak_start if streak == thresholds.consecutive_moving_points else None

    base = dict(
        point=curr,
        device_on_time=curr.timestamp if curr.status == 1 else None,
        first_movement_time=first_movement,
    )
    counters = dict(consecutive_moving=streak, streak_start=streak_start)

    if prev is None or state.phase is Phase.IDLE:
        if kind is PointClass.MOVING:
            new = MachineState(Phase.MOVING, run_start=curr, **counters)
        elif kind is PointClass.STOPPED:
            new = MachineState(Phase.STOPPED, run_start=curr, **counters)
        else:
            new = MachineState(Phase.IDLE, **counters)
        return new, MetricsDelta(**base)

    dt = seconds_between(prev.timestamp, curr.timestamp)

    if state.phase is Phase.MOVING:
        d = distance_km(prev.coordinate, curr.coordinate)
        run_distance = state.run_distance_km + d
        if kind is PointClass.STOPPED:
            segment = _movement_segment(state.run_start, curr, run_distance)
            new = MachineState(Phase.STOPPED, run_start=curr, **counters)
            return new, MetricsDelta(distance_km=d, movement_sec=dt, movement=segment, **base)
        new = replace(state, run_distance_km=run_distance, **counters)
        return new, MetricsDelta(distance_km=d, movement_sec=dt, **base)

    # STOPPED: tag the elapsed time by the status of the point closing it
    on_sec = state.stop_on_sec + (dt if curr.status == 1 else 0)
    off_sec = state.stop_off_sec + (dt if curr.status != 1 else 0)
    stopped = replace(state, stop_on_sec=on_sec, stop_off_sec=off_sec, **counters)
    if kind is PointClass.MOVING:
        closing = _close_stoppage(stopped, curr, thresholds)
        new = MachineState(Phase.MOVING, run_start=curr, **counters)
        return new, MetricsDelta(**closing, **base)
    return stopped, MetricsDelta(**base)


def finalize_delta(state: MachineState, last: Optional[GpsPoint],
                   thresholds: Optional[ThresholdConfig] = None) -> MetricsDelta:
    """Delta closing whatever run is still open, using *last* as its boundary."""
    thresholds = thresholds or ThresholdConfig()
    if last is None or state.run_start is None:
        return MetricsDelta()
    if state.phase is Phase.MOVING:
        return MetricsDelta(movement=_movement_segment(state.run_start, last, state.run_distance_km))
    if state.phase is Phase.STOPPED:
        return MetricsDelta(**_close_stoppage(state, last, thresholds))
    return MetricsDelta()


# ----------------------------------------------------------------------
# Incremental driver
# ----------------------------------------------------------------------

@dataclass(slots=True)
class SegmenterState:
    """Everything needed to resume analysis of one entity's stream.

    Memory is constant unless ``keep_details`` is set, in which case closed
    movement and stoppage details are collected as well.
    """

    machine: MachineState = field(default_factory=MachineState)
    metrics: AggregatedMetrics = field(default_factory=AggregatedMetrics)
    last_point: Optional[GpsPoint] = None
    keep_details: bool = False
    movements: List[MovementSegment] = field(default_factory=list)
    stoppages: List[StoppageInterval] = field(default_factory=list)

    def copy(self) -> "SegmenterState":
        return replace(
            self,
            metrics=replace(self.metrics),
            movements=list(self.movements),
            stoppages=list(self.stoppages),
        )

    def record(self, delta: MetricsDelta) -> None:
        delta.apply(self.metrics)
        if self.keep_details:
            if delta.movement is not None:
                self.movements.append(delta.movement)
            if delta.stoppage is not None:
                self.stoppages.append(delta.stoppage)


def within_window(points: Iterable[GpsPoint],
                  window: Optional[Tuple[datetime, datetime]]) -> Iterator[GpsPoint]:
    """Drop points outside ``[start, end]``."""
    if window is None:
        yield from points
        return
    start, end = window
    for point in points:
        if start <= point.timestamp <= end:
            yield point


class MovementSegmenter:
    """Aggregates movement/stoppage metrics for one entity's ordered stream."""

    def __init__(self, thresholds: Optional[ThresholdConfig] = None):
        self.thresholds = thresholds or ThresholdConfig()

    def new_state(self, keep_details: bool = False) -> SegmenterState:
        return SegmenterState(keep_details=keep_details)

    def feed(self, points: Iterable[GpsPoint],
             state: Optional[SegmenterState] = None) -> SegmenterState:
        """Consume *points* into *state* (a fresh one if None) and return it.

        The open run is left open; call ``finalize`` to close it.
        """
        state = state if state is not None else self.new_state()
        for point in points:
            state.machine, delta = step(state.machine, state.last_point, point, self.thresholds)
            state.record(delta)
            state.last_point = point
        return state

    def finalize(self, state: SegmenterState) -> SegmentationResult:
        """Close the open run on a copy of *state*; *state* stays resumable."""
        closed = state.copy()
        closed.record(finalize_delta(closed.machine, closed.last_point, self.thresholds))
        return SegmentationResult(
            metrics=closed.metrics,
            movements=closed.movements,
            stoppages=closed.stoppages,
        )

    # ------------------------------------------------------------------
    # One-shot helpers
    # ------------------------------------------------------------------

    def analyze(self, points: Iterable[GpsPoint],
                window: Optional[Tuple[datetime, datetime]] = None) -> AggregatedMetrics:
        """Analyze a whole stream, optionally restricted to a working window.

        An empty (or fully filtered) stream yields zeroed metrics.
        """
        state = self.feed(within_window(points, window))
        return self.finalize(state).metrics

    def analyze_detailed(self, points: Iterable[GpsPoint],
                         window: Optional[Tuple[datetime, datetime]] = None) -> SegmentationResult:
        """Like ``analyze`` but also returns movement and stoppage details."""
        state = self.feed(within_window(points, window), self.new_state(keep_details=True))
        result = self.finalize(state)
        logger.debug("Segmented %d points: %d movements, %d stoppages",
                     result.metrics.total_records, len(result.movements), len(result.stoppages))
        return result
