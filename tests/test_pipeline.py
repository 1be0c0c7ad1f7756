#
# test_pipeline.py: tests for the sharded worker model and service wiring
#
import threading
from datetime import timedelta

import pandas as pd
import pytest

from farmtrack.config import EngineConfig, WorkerConfig
from farmtrack.errors import OutOfOrderPointError, PersistenceConflictError
from farmtrack.loader import FramePointSource, normalize_frame
from farmtrack.models import SessionStatus
from farmtrack.pipeline import ShardedExecutor, TrackingService, shard_for
from farmtrack.storage import InMemoryAggregateStore, InMemorySessionStore, InMemoryZoneSource

from conftest import BASE_TIME, INSIDE, OUTSIDE, make_point


def track_rows(entity_id, count=12, step_seconds=20, lat0=35.7010):
    """A tractor driving north through the field at ~20 km/h."""
    return [
        {
            'entity_id': entity_id,
            'timestamp': (BASE_TIME + timedelta(seconds=i * step_seconds)).isoformat(),
            'latitude': lat0 + i * 0.001,
            'longitude': 51.4050,
            'speed': 20,
            'status': 1,
        }
        for i in range(count)
    ]


def build_service(zone, sessions=None):
    df = normalize_frame(pd.DataFrame(track_rows('tractor-1') + track_rows('tractor-2', lat0=35.7020)))
    config = EngineConfig(workers=WorkerConfig(shards=2, io_timeout_seconds=5))
    zones = InMemoryZoneSource({'field-1': zone})
    return TrackingService(config, FramePointSource(df), zones,
                           InMemoryAggregateStore(), sessions or InMemorySessionStore())


@pytest.fixture
def service(field_zone):
    svc = build_service(field_zone)
    yield svc
    svc.close()


class FlakySessionStore(InMemorySessionStore):
    """Fails the next save as if another writer got there first."""

    def __init__(self):
        super().__init__()
        self.fail_next = False

    def save_session(self, session, expected_version):
        if self.fail_next:
            self.fail_next = False
            raise PersistenceConflictError(session.entity_id, session.day)
        return super().save_session(session, expected_version)


def test_shard_for_is_stable():
    assert shard_for('tractor-1', 4) == shard_for('tractor-1', 4)
    assert all(0 <= shard_for(f"t{i}", 3) < 3 for i in range(50))


def test_same_key_runs_on_same_thread():
    with ShardedExecutor(shards=3) as executor:
        names = [executor.submit('tractor-1', lambda: threading.current_thread().name).result()
                 for _ in range(5)]
    assert len(set(names)) == 1


def test_sharded_executor_rejects_zero_shards():
    with pytest.raises(ValueError):
        ShardedExecutor(shards=0)


def test_analyze_day_saves_aggregate(service):
    metrics = service.analyze_day('tractor-1', BASE_TIME.date())
    assert metrics.total_records == 12
    assert metrics.movement_duration_sec == 220
    assert metrics.movement_distance_km > 0
    assert service.aggregates.load_aggregate('tractor-1', BASE_TIME.date()) == metrics


def test_analyze_days_in_parallel(service):
    results = service.analyze_days(['tractor-1', 'tractor-2', 'ghost'], BASE_TIME.date())
    assert results['tractor-1'].total_records == 12
    assert results['tractor-2'].total_records == 12
    assert results['ghost'].is_empty


def test_zone_scoped_day(service):
    whole = service.analyze_day('tractor-1', BASE_TIME.date())
    zoned = service.analyze_day('tractor-1', BASE_TIME.date(), zone_id='field-1')
    # the track leaves the field to the north
    assert 0 < zoned.total_records < whole.total_records
    assert zoned.movement_duration_sec < whole.movement_duration_sec


def test_detail_day(service):
    result = service.detail_day('tractor-1', BASE_TIME.date())
    assert len(result.movements) == 1
    assert result.stoppages == []


def test_live_ingest_tracks_presence_and_zone_metrics(service):
    day = BASE_TIME.date()
    session = None
    for t in (0, 10, 20):
        session = service.ingest(make_point(t, speed=15, entity_id='worker-1'),
                                 boundary_zone_id='field-1', task_zone_ids=('field-1',)).result()
    assert session.status is SessionStatus.IN_PROGRESS

    out = make_point(40 * 60, speed=15, lat=OUTSIDE[0], lon=OUTSIDE[1], entity_id='worker-1')
    session = service.ingest(out, boundary_zone_id='field-1', task_zone_ids=('field-1',)).result()
    assert session.status is SessionStatus.COMPLETED

    zone_metrics = service.live_zone_metrics('worker-1', 'field-1')
    assert zone_metrics.total_records == 3
    assert zone_metrics.movement_duration_sec == 20
    assert service.aggregates.load_aggregate('worker-1', day).total_records == 4
    assert service.aggregates.load_aggregate('worker-1', day, 'field-1') == zone_metrics


def test_live_ingest_without_boundary(service):
    assert service.ingest(make_point(0, entity_id='worker-2')).result() is None
    assert service.live_zone_metrics('worker-2', 'field-1').is_empty


def test_live_ingest_surfaces_errors(service):
    service.ingest(make_point(10, speed=15, entity_id='worker-3')).result()
    future = service.ingest(make_point(0, speed=15, entity_id='worker-3'))
    with pytest.raises(OutOfOrderPointError):
        future.result()


def test_zone_scoped_aggregate_is_stored_separately(service):
    day = BASE_TIME.date()
    whole = service.analyze_day('tractor-1', day)
    zoned = service.analyze_day('tractor-1', day, zone_id='field-1')
    assert whole != zoned
    assert service.aggregates.load_aggregate('tractor-1', day) == whole
    assert service.aggregates.load_aggregate('tractor-1', day, 'field-1') == zoned


def test_session_conflict_leaves_no_partial_update(field_zone):
    sessions = FlakySessionStore()
    svc = build_service(field_zone, sessions)
    day = BASE_TIME.date()
    try:
        svc.ingest(make_point(0, speed=15, entity_id='worker-1'),
                   boundary_zone_id='field-1', task_zone_ids=('field-1',)).result()
        smoother = svc.noise_filter.state_for('worker-1')

        sessions.fail_next = True
        future = svc.ingest(make_point(10, speed=15, entity_id='worker-1'),
                            boundary_zone_id='field-1', task_zone_ids=('field-1',))
        with pytest.raises(PersistenceConflictError):
            future.result()
        assert svc.noise_filter.state_for('worker-1') == smoother
        assert svc.aggregates.load_aggregate('worker-1', day).total_records == 1
        assert svc.aggregates.load_aggregate('worker-1', day, 'field-1').total_records == 1
        assert svc.live_zone_metrics('worker-1', 'field-1').total_records == 1

        # the retry counts the fix exactly once
        session = svc.ingest(make_point(10, speed=15, entity_id='worker-1'),
                             boundary_zone_id='field-1', task_zone_ids=('field-1',)).result()
        assert session.version == 2
        assert svc.aggregates.load_aggregate('worker-1', day).total_records == 2
        assert svc.live_zone_metrics('worker-1', 'field-1').total_records == 2
    finally:
        svc.close()


def test_rejected_fix_leaves_live_state_untouched(service):
    day = BASE_TIME.date()
    service.ingest(make_point(0, speed=15, entity_id='worker-3')).result()
    service.ingest(make_point(20, speed=15, lat=INSIDE[0] + 0.0005, entity_id='worker-3')).result()
    smoother = service.noise_filter.state_for('worker-3')

    with pytest.raises(OutOfOrderPointError):
        service.ingest(make_point(10, speed=15, entity_id='worker-3')).result()
    # an earlier day is out of order as well
    with pytest.raises(OutOfOrderPointError):
        service.ingest(make_point(-86400, speed=15, entity_id='worker-3')).result()

    assert service.noise_filter.state_for('worker-3') == smoother
    assert service.aggregates.load_aggregate('worker-3', day).total_records == 2
    assert service.aggregates.load_aggregate('worker-3', day - timedelta(days=1)) is None


def test_batch_run_keeps_live_smoother_state(service):
    service.ingest(make_point(0, speed=15, entity_id='tractor-1')).result()
    service.ingest(make_point(20, speed=15, lat=INSIDE[0] + 0.0005, entity_id='tractor-1')).result()
    smoother = service.noise_filter.state_for('tractor-1')
    assert smoother is not None

    service.analyze_day('tractor-1', BASE_TIME.date() - timedelta(days=3))
    service.analyze_day('tractor-1', BASE_TIME.date())
    service.detail_day('tractor-1', BASE_TIME.date())
    assert service.noise_filter.state_for('tractor-1') == smoother
