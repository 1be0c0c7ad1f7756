#
# test_zone_segmenter.py: unit tests for zone-scoped segmentation
#
import pytest

from farmtrack.errors import OutOfOrderPointError
from farmtrack.geo import Zone
from farmtrack.models import AggregatedMetrics, ZonePresenceSegment
from farmtrack.zone_segmenter import ZoneSegmenter

from conftest import FIELD, OUTSIDE, make_point


def inside(t, lat=35.7050, speed=10.0, status=1):
    return make_point(t, speed=speed, status=status, lat=lat, lon=51.4050)


def outside(t, speed=10.0):
    return make_point(t, speed=speed, status=1, lat=OUTSIDE[0], lon=OUTSIDE[1])


def visits():
    """In zone 0..10 s, out 12..18 s, back in 20..30 s."""
    return [
        inside(0, lat=35.7010),
        inside(5, lat=35.7012),
        inside(10, lat=35.7014),
        outside(12),
        outside(15),
        outside(18),
        inside(20, lat=35.7060),
        inside(25, lat=35.7062),
        inside(30, lat=35.7064),
    ]


def test_gap_between_visits_is_excluded(field_zone):
    m = ZoneSegmenter().analyze(visits(), field_zone)
    assert m.movement_duration_sec + m.stoppage_duration_sec <= 20
    assert m.movement_duration_sec == 20
    assert m.total_records == 6


def test_gap_distance_is_excluded(field_zone):
    m = ZoneSegmenter().analyze(visits(), field_zone)
    run_distance = ZoneSegmenter().analyze(visits()[:3], field_zone).movement_distance_km
    second = ZoneSegmenter().analyze(visits()[6:], field_zone).movement_distance_km
    assert m.movement_distance_km == pytest.approx(run_distance + second)


def test_presence_segments(field_zone):
    segmenter = ZoneSegmenter()
    expected = [ZonePresenceSegment(0, 2), ZonePresenceSegment(6, 8)]
    assert segmenter.segment(visits(), field_zone) == expected

    state = segmenter.feed(visits(), field_zone)
    assert segmenter.presence_segments(state) == expected


def test_runs_start_fresh(field_zone):
    # a stoppage left open at the zone exit must not carry into the next visit
    points = [
        inside(0),
        inside(10, speed=0.0, status=0),
        outside(100),
        inside(200),
        inside(210),
    ]
    m = ZoneSegmenter().analyze(points, field_zone)
    assert m.stoppage_count == 0
    assert m.ignored_stoppage_count == 1
    assert m.movement_duration_sec == 20


def test_activation_times_take_earliest_across_runs(field_zone):
    points = [inside(0, speed=0.0, status=0), inside(10, speed=0.0, status=0), outside(20)]
    points += [inside(30), inside(40), inside(50)]
    m = ZoneSegmenter().analyze(points, field_zone)
    assert m.device_on_time == points[3].timestamp
    assert m.first_movement_time == points[3].timestamp
    assert m.latest_status == 1


@pytest.mark.parametrize("vertices", [None, [], [(35.70, 51.40), (35.71, 51.41)]])
def test_missing_zone_gives_zero_metrics(vertices):
    assert ZoneSegmenter().analyze(visits(), vertices) == AggregatedMetrics()


def test_accepts_vertex_list():
    m = ZoneSegmenter().analyze(visits(), FIELD)
    assert m.movement_duration_sec == 20


@pytest.mark.parametrize("split", [1, 2, 7, 8])
def test_split_inside_a_run_reproduces_single_pass(field_zone, split):
    points = visits()
    segmenter = ZoneSegmenter()
    single = segmenter.analyze(points, field_zone)

    state = segmenter.feed(points[:split], field_zone)
    state = segmenter.feed(points[split:], field_zone, state)
    assert segmenter.finalize(state) == single


def test_out_of_order_across_gap_is_rejected(field_zone):
    with pytest.raises(OutOfOrderPointError):
        ZoneSegmenter().analyze([inside(10), outside(20), inside(15)], field_zone)


def test_boundary_point_counts_as_inside():
    zone = Zone(FIELD)
    assert zone.contains(35.7000, 51.4050)
    assert not zone.contains(35.6999, 51.4050)
