"""Zone-scoped movement analysis.

Only time spent inside the target zone counts. The stream is cut into
maximal in-zone runs; each run is segmented from a fresh state and the run
results are merged. Time and distance between two runs are dropped entirely.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .config import ThresholdConfig
from .errors import OutOfOrderPointError
from .geo import Zone
from .models import AggregatedMetrics, Coordinate, GpsPoint, ZonePresenceSegment
from .segmenter import MovementSegmenter, SegmenterState, within_window

logger = logging.getLogger(__name__)

ZoneLike = Union[Zone, Sequence[Coordinate], None]


def as_zone(zone: ZoneLike) -> Optional[Zone]:
    if zone is None or isinstance(zone, Zone):
        return zone
    return Zone(zone)


@dataclass(slots=True)
class ZoneState:
    """Resumable state of a zone-scoped analysis.

    Attributes:
        closed: Merged metrics of every run already closed.
        run: Segmenter state of the open run, None while outside the zone.
        run_start_index: Stream index of the open run's first point.
        index: Number of points consumed so far.
        last_timestamp: Timestamp of the last consumed point.
        presence_segments: Closed ``[start, end]`` index ranges.
    """

    closed: AggregatedMetrics = field(default_factory=AggregatedMetrics)
    run: Optional[SegmenterState] = None
    run_start_index: int = 0
    index: int = 0
    last_timestamp: Optional[datetime] = None
    presence_segments: List[ZonePresenceSegment] = field(default_factory=list)

    def copy(self) -> "ZoneState":
        return replace(
            self,
            closed=replace(self.closed),
            run=self.run.copy() if self.run is not None else None,
            presence_segments=list(self.presence_segments),
        )


class ZoneSegmenter:
    """Runs the movement state machine independently inside each zone visit."""

    def __init__(self, thresholds: Optional[ThresholdConfig] = None):
        self.segmenter = MovementSegmenter(thresholds)

    # ------------------------------------------------------------------
    # Incremental API
    # ------------------------------------------------------------------

    def feed(self, points: Iterable[GpsPoint], zone: ZoneLike,
             state: Optional[ZoneState] = None) -> ZoneState:
        """Consume *points* against *zone*, resuming from *state* if given."""
        state = state if state is not None else ZoneState()
        zone = as_zone(zone)
        if zone is None or zone.is_empty:
            return state

        for point in points:
            if state.last_timestamp is not None and point.timestamp < state.last_timestamp:
                raise OutOfOrderPointError(point.entity_id, state.last_timestamp, point.timestamp)
            state.last_timestamp = point.timestamp

            if zone.contains_point(point):
                if state.run is None:
                    state.run = self.segmenter.new_state()
                    state.run_start_index = state.index
                self.segmenter.feed((point,), state.run)
            elif state.run is not None:
                self._close_run(state, state.index - 1)
            state.index += 1
        return state

    def _close_run(self, state: ZoneState, end_index: int) -> None:
        result = self.segmenter.finalize(state.run)
        state.closed = state.closed.merge(result.metrics)
        state.presence_segments.append(ZonePresenceSegment(state.run_start_index, end_index))
        state.run = None

    def finalize(self, state: ZoneState) -> AggregatedMetrics:
        """Merged metrics including the open run; *state* is left untouched."""
        if state.run is None:
            return state.closed.merge(AggregatedMetrics())
        open_run = self.segmenter.finalize(state.run)
        return state.closed.merge(open_run.metrics)

    def presence_segments(self, state: ZoneState) -> List[ZonePresenceSegment]:
        segments = list(state.presence_segments)
        if state.run is not None:
            segments.append(ZonePresenceSegment(state.run_start_index, state.index - 1))
        return segments

    # ------------------------------------------------------------------
    # One-shot API
    # ------------------------------------------------------------------

    def analyze(self, points: Iterable[GpsPoint], zone: ZoneLike,
                window: Optional[Tuple[datetime, datetime]] = None) -> AggregatedMetrics:
        """Metrics for time spent inside *zone*.

        A missing or empty zone yields zeroed metrics without any
        containment test.
        """
        zone = as_zone(zone)
        if zone is None or zone.is_empty:
            logger.debug("No usable zone; returning empty metrics")
            return AggregatedMetrics()
        state = self.feed(within_window(points, window), zone)
        return self.finalize(state)

    def segment(self, points: Iterable[GpsPoint], zone: ZoneLike) -> List[ZonePresenceSegment]:
        """Maximal in-zone index runs of *points*."""
        zone = as_zone(zone)
        if zone is None or zone.is_empty:
            return []
        segments: List[ZonePresenceSegment] = []
        start: Optional[int] = None
        index = -1
        for index, point in enumerate(points):
            if zone.contains_point(point):
                if start is None:
                    start = index
            elif start is not None:
                segments.append(ZonePresenceSegment(start, index - 1))
                start = None
        if start is not None:
            segments.append(ZonePresenceSegment(start, index))
        return segments
