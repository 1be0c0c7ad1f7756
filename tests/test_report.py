#
# test_report.py: unit tests for report text, detail tables and metric merging
#
from datetime import timedelta

import pytest

from farmtrack.config import EngineConfig
from farmtrack.models import AggregatedMetrics, format_duration
from farmtrack.report import TrackingReportGenerator, movement_table, stoppage_table, summary_table
from farmtrack.segmenter import MovementSegmenter

from conftest import BASE_TIME, make_point


def day_points():
    lats = [35.7000 + i * 0.0005 for i in range(8)]
    return [
        make_point(0, speed=10, lat=lats[0]),
        make_point(10, speed=10, lat=lats[1]),
        make_point(20, speed=0, status=0, lat=lats[2]),
        make_point(40, speed=0, status=0, lat=lats[2]),
        make_point(50, speed=10, lat=lats[3]),
        make_point(60, speed=10, lat=lats[4]),
        make_point(70, speed=2, status=1, lat=lats[5]),
        make_point(200, speed=0, status=1, lat=lats[5]),
        make_point(210, speed=12, lat=lats[6]),
    ]


@pytest.fixture
def result():
    return MovementSegmenter().analyze_detailed(day_points())


def test_format_duration():
    assert format_duration(0) == "00:00:00"
    assert format_duration(3725) == "01:02:05"
    assert format_duration(90061) == "25:01:01"


def test_stoppage_table_numbers_ignored_separately(result):
    table = stoppage_table(result)
    assert table['index'].tolist() == ['I1', '1']
    assert table['ignored'].tolist() == [True, False]
    assert table['status'].tolist() == ['off', 'on']


def test_movement_table(result):
    table = movement_table(result)
    assert len(table) == 3
    assert table['index'].tolist() == [1, 2, 3]
    assert table.iloc[0]['start_time'] == BASE_TIME.strftime('%H:%M:%S')


def test_to_dict_rounds_for_display():
    m = AggregatedMetrics(movement_distance_km=1.23456, movement_duration_sec=3725)
    d = m.to_dict()
    assert d['movement_distance_km'] == 1.235
    assert d['movement_duration_formatted'] == "01:02:05"


def test_merge_sums_and_picks_earliest():
    a = AggregatedMetrics(movement_distance_km=1.0, movement_duration_sec=3600, stoppage_count=1,
                          device_on_time=BASE_TIME + timedelta(hours=1), max_speed=20.0,
                          latest_status=0, total_records=5, start_time=BASE_TIME,
                          end_time=BASE_TIME + timedelta(hours=2))
    b = AggregatedMetrics(movement_distance_km=2.0, movement_duration_sec=3600, stoppage_count=2,
                          device_on_time=BASE_TIME, first_movement_time=BASE_TIME,
                          max_speed=15.0, latest_status=1, total_records=3,
                          start_time=BASE_TIME + timedelta(hours=3),
                          end_time=BASE_TIME + timedelta(hours=4))
    merged = a.merge(b)
    assert merged.movement_distance_km == 3.0
    assert merged.stoppage_count == 3
    assert merged.device_on_time == BASE_TIME
    assert merged.first_movement_time == BASE_TIME
    assert merged.max_speed == 20.0
    assert merged.latest_status == 1
    assert merged.average_speed == pytest.approx(1.5)
    assert merged.total_records == 8
    assert a.merge(AggregatedMetrics()) == a
    assert AggregatedMetrics().merge(b) == b


def test_generate_report(tmp_path, result):
    config = EngineConfig()
    metadata = {'export.csv': {'records': 9, 'date_range': 'x to y', 'file_hash': 'abc'}}
    generator = TrackingReportGenerator(config, metadata)
    output = tmp_path / "report.txt"
    text = generator.generate_report(
        {'tractor-1': result.metrics, 'tractor-2': AggregatedMetrics()},
        output,
        zone_metrics={'tractor-1': result.metrics},
    )
    assert output.read_text(encoding='utf-8') == text
    assert "Entity: tractor-1" in text
    assert "No GPS data in the analyzed window." in text
    assert "Inside target zone:" in text
    assert "FLEET TOTAL" in text
    assert "SHA256 hash: abc" in text


def test_summary_and_tables_on_disk(tmp_path, result):
    summary = summary_table({'tractor-1': result.metrics})
    assert summary.loc['tractor-1', 'stoppage_count'] == 1
    assert summary_table({}).empty

    written = TrackingReportGenerator(EngineConfig()).save_tables({'tractor-1': result}, tmp_path)
    assert sorted(p.name for p in written) == ['tractor-1_movements.csv', 'tractor-1_stoppages.csv']
