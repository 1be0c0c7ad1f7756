"""Wiring of the engine components with a single-writer-per-entity worker model.

Work for one entity always lands on the same single-threaded shard, so the
entity's filter state, segmenter state and session are never touched by two
threads at once. Different entities run in parallel on different shards.
"""

import logging
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .config import EngineConfig
from .errors import OutOfOrderPointError
from .models import AggregatedMetrics, AttendanceSession, GpsPoint, SegmentationResult
from .noise_filter import NoiseFilter, smooth_step
from .presence import PresenceSessionTracker
from .segmenter import MovementSegmenter, SegmenterState
from .storage import AggregateStore, PointSource, SessionStore, ZoneSource
from .zone_segmenter import ZoneSegmenter, ZoneState

logger = logging.getLogger(__name__)


def shard_for(entity_id: str, shards: int) -> int:
    """Stable shard index for an entity id."""
    return zlib.crc32(entity_id.encode('utf-8')) % shards


class ShardedExecutor:
    """N single-thread executors; tasks for one key always share a thread."""

    def __init__(self, shards: int = 4, name: str = "farmtrack"):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.shards = shards
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{name}-{i}")
            for i in range(shards)
        ]

    def submit(self, key: str, fn: Callable, *args, **kwargs) -> Future:
        return self._executors[shard_for(key, self.shards)].submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        for executor in self._executors:
            executor.shutdown(wait=wait)

    def __enter__(self) -> "ShardedExecutor":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


@dataclass(slots=True)
class _LiveState:
    """Incremental analysis state for one entity and day."""

    day: date
    movement: SegmenterState
    zones: Dict[str, ZoneState] = field(default_factory=dict)
    last_timestamp: Optional[datetime] = None

    def copy(self) -> "_LiveState":
        return _LiveState(
            day=self.day,
            movement=self.movement.copy(),
            zones={zone_id: state.copy() for zone_id, state in self.zones.items()},
            last_timestamp=self.last_timestamp,
        )


class TrackingService:
    """Batch and live entry points over the engine.

    Storage calls are run on a separate I/O pool and bounded by
    ``workers.io_timeout_seconds``; a timeout is logged and re-raised.
    """

    def __init__(self, config: EngineConfig, points: PointSource, zones: ZoneSource,
                 aggregates: AggregateStore, sessions: SessionStore):
        self.config = config
        self.points = points
        self.zones = zones
        self.aggregates = aggregates
        self.noise_filter = NoiseFilter(config.filter)
        self.segmenter = MovementSegmenter(config.thresholds)
        self.zone_segmenter = ZoneSegmenter(config.thresholds)
        self.presence = PresenceSessionTracker(sessions, config.presence)
        self.executor = ShardedExecutor(config.workers.shards)
        self._io = ThreadPoolExecutor(max_workers=max(2, config.workers.shards),
                                      thread_name_prefix="farmtrack-io")
        self._live: Dict[str, _LiveState] = {}

    def close(self) -> None:
        self.executor.shutdown()
        self._io.shutdown()

    def __enter__(self) -> "TrackingService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _call_io(self, fn: Callable, *args):
        future = self._io.submit(fn, *args)
        try:
            return future.result(timeout=self.config.workers.io_timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.error("Storage call %s timed out after %.1fs",
                         getattr(fn, '__name__', fn), self.config.workers.io_timeout_seconds)
            raise

    def _day_bounds(self, day: date) -> Tuple[datetime, datetime]:
        tz = self.config.tzinfo
        start = datetime.combine(day, time.min, tzinfo=tz)
        return start, start + timedelta(days=1) - timedelta(microseconds=1)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def _batch_filter(self, raw) -> Iterator[GpsPoint]:
        # batch runs never touch the live smoother state
        return NoiseFilter(self.config.filter).filter(raw)

    def _analyze_day(self, entity_id: str, day: date, zone_id: Optional[str],
                     window: Optional[Tuple[datetime, datetime]]) -> AggregatedMetrics:
        start, end = self._day_bounds(day)
        raw = self._call_io(self.points.fetch_points, entity_id, start, end)
        cleaned = self._batch_filter(raw)
        if zone_id is not None:
            zone = self._call_io(self.zones.fetch_zone, zone_id)
            metrics = self.zone_segmenter.analyze(cleaned, zone, window)
        else:
            metrics = self.segmenter.analyze(cleaned, window)
        self._call_io(self.aggregates.save_aggregate, entity_id, day, metrics, zone_id)
        logger.info("Analyzed %s on %s%s: %d points, %.3f km", entity_id, day,
                    f" in {zone_id}" if zone_id else "",
                    metrics.total_records, metrics.movement_distance_km)
        return metrics

    def submit_day(self, entity_id: str, day: date, zone_id: Optional[str] = None,
                   window: Optional[Tuple[datetime, datetime]] = None) -> Future:
        """Queue a full-day re-analysis on the entity's shard."""
        return self.executor.submit(entity_id, self._analyze_day, entity_id, day, zone_id, window)

    def analyze_day(self, entity_id: str, day: date, zone_id: Optional[str] = None,
                    window: Optional[Tuple[datetime, datetime]] = None) -> AggregatedMetrics:
        return self.submit_day(entity_id, day, zone_id, window).result()

    def analyze_days(self, entity_ids: List[str], day: date,
                     zone_id: Optional[str] = None) -> Dict[str, AggregatedMetrics]:
        """Analyze many entities in parallel; failures are logged and re-raised."""
        futures = {eid: self.submit_day(eid, day, zone_id) for eid in entity_ids}
        results: Dict[str, AggregatedMetrics] = {}
        for eid, future in futures.items():
            try:
                results[eid] = future.result()
            except Exception:
                logger.exception("Analysis failed for %s on %s", eid, day)
                raise
        return results

    def detail_day(self, entity_id: str, day: date) -> SegmentationResult:
        """Movement and stoppage details for one entity's day."""
        def run() -> SegmentationResult:
            start, end = self._day_bounds(day)
            raw = self._call_io(self.points.fetch_points, entity_id, start, end)
            return self.segmenter.analyze_detailed(self._batch_filter(raw))
        return self.executor.submit(entity_id, run).result()

    # ------------------------------------------------------------------
    # Live
    # ------------------------------------------------------------------

    def _ingest(self, point: GpsPoint, boundary_zone_id: Optional[str],
                task_zone_ids: Tuple[str, ...]) -> Optional[AttendanceSession]:
        entity_id = point.entity_id
        current = self._live.get(entity_id)
        if (current is not None and current.last_timestamp is not None
                and point.timestamp < current.last_timestamp):
            raise OutOfOrderPointError(entity_id, current.last_timestamp, point.timestamp)

        # staged on copies; live state is replaced only after every save succeeds.
        # Live fixes get smoothing only; spike correction needs the next fix.
        smoother, cleaned = smooth_step(self.noise_filter.state_for(entity_id), point,
                                        self.config.filter)
        day = cleaned.timestamp.date()
        if current is None or current.day != day:
            staged = _LiveState(day=day, movement=self.segmenter.new_state())
        else:
            staged = current.copy()

        self.segmenter.feed((cleaned,), staged.movement)
        staged.last_timestamp = cleaned.timestamp
        zone_metrics: Dict[str, AggregatedMetrics] = {}
        for zone_id in task_zone_ids:
            zone = self._call_io(self.zones.fetch_zone, zone_id)
            staged.zones[zone_id] = self.zone_segmenter.feed((cleaned,), zone, staged.zones.get(zone_id))
            zone_metrics[zone_id] = self.zone_segmenter.finalize(staged.zones[zone_id])

        # conditional session write before the aggregate upserts
        session = None
        if boundary_zone_id is not None:
            boundary = self._call_io(self.zones.fetch_zone, boundary_zone_id)
            session = self.presence.observe(entity_id, cleaned, boundary)

        metrics = self.segmenter.finalize(staged.movement).metrics
        self._call_io(self.aggregates.save_aggregate, entity_id, day, metrics)
        for zone_id, scoped in zone_metrics.items():
            self._call_io(self.aggregates.save_aggregate, entity_id, day, scoped, zone_id)

        self.noise_filter.set_state(entity_id, smoother)
        self._live[entity_id] = staged
        return session

    def ingest(self, point: GpsPoint, boundary_zone_id: Optional[str] = None,
               task_zone_ids: Tuple[str, ...] = ()) -> Future:
        """Queue one live fix on the entity's shard.

        The future resolves to the attendance session (or None without a
        boundary zone) and carries any ``TrackingError`` raised. A fix that
        raises leaves the live filter and segmenter state untouched, so a
        retry rewrites the same aggregates instead of counting the fix twice.
        """
        return self.executor.submit(point.entity_id, self._ingest, point,
                                    boundary_zone_id, tuple(task_zone_ids))

    def live_zone_metrics(self, entity_id: str, zone_id: str) -> AggregatedMetrics:
        """Zone-scoped metrics accumulated by ``ingest`` for the current day."""
        def run() -> AggregatedMetrics:
            live = self._live.get(entity_id)
            if live is None or zone_id not in live.zones:
                return AggregatedMetrics()
            return self.zone_segmenter.finalize(live.zones[zone_id])
        return self.executor.submit(entity_id, run).result()
