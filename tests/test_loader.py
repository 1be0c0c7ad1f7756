#
# test_loader.py: unit tests for CSV loading, zones and configuration
#
import math
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import pytest

from farmtrack.config import EngineConfig, config_from_dict, load_config
from farmtrack.errors import ConfigError
from farmtrack.loader import (
    FramePointSource,
    calculate_file_hash,
    load_zones,
    normalize_frame,
    parse_coordinate_string,
    read_points_csv,
    zones_from_mapping,
)

CSV = """imei,date_time,lat,lng,speed,status
860001,2024-05-01 08:00:20,35.7052,51.4052,12,1
860001,2024-05-01 08:00:00,35.7050,51.4050,10,1
860001,not-a-time,35.7054,51.4054,12,1
860001,2024-05-01 08:00:40,bad,51.4056,0,0
860002,2024-05-01 08:00:10,35.7100,51.4100,5,1
"""


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "export.csv"
    path.write_text(CSV)
    return path


def test_read_points_csv_normalises(csv_file):
    df = read_points_csv(csv_file)
    assert list(df.columns) == ['entity_id', 'timestamp', 'latitude', 'longitude', 'speed', 'status']
    # unparsable timestamp dropped, bad coordinate kept as NaN
    assert len(df) == 4
    assert df['entity_id'].tolist() == ['860001', '860001', '860001', '860002']
    assert df['timestamp'].is_monotonic_increasing is False
    first = df[df['entity_id'] == '860001']
    assert first['timestamp'].is_monotonic_increasing
    assert math.isnan(first.iloc[2]['latitude'])


def test_timezone_localisation(csv_file):
    df = read_points_csv(csv_file, tz="Asia/Tehran")
    assert str(df['timestamp'].dt.tz) == "Asia/Tehran"


def test_frame_point_source(csv_file):
    source = FramePointSource.from_csv(csv_file)
    assert source.entity_ids() == ['860001', '860002']

    points = list(source.fetch_points('860001'))
    assert len(points) == 3
    assert points[0].timestamp == datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
    assert points[0].speed == 10.0
    assert points[-1].status == 0

    start = datetime(2024, 5, 1, 8, 0, 10, tzinfo=timezone.utc)
    assert len(list(source.fetch_points('860001', start=start))) == 2


def test_coordinate_column():
    df = pd.DataFrame({
        'timestamp': ['2024-05-01 08:00:00'],
        'coordinate': ['35.7050,51.4050'],
    })
    out = normalize_frame(df)
    assert out.iloc[0]['latitude'] == 35.7050
    assert out.iloc[0]['entity_id'] == 'unknown'
    assert out.iloc[0]['status'] == 1


def test_missing_columns_rejected():
    with pytest.raises(ValueError):
        normalize_frame(pd.DataFrame({'timestamp': ['2024-05-01'], 'latitude': [35.7]}))


def test_parse_coordinate_string():
    assert parse_coordinate_string("35.7, 51.4") == (35.7, 51.4)
    assert parse_coordinate_string([35.7, 51.4]) == (35.7, 51.4)
    lat, lon = parse_coordinate_string("garbage")
    assert math.isnan(lat) and math.isnan(lon)


def test_file_hash_is_stable(csv_file):
    assert calculate_file_hash(csv_file) == calculate_file_hash(csv_file)
    assert len(calculate_file_hash(csv_file)) == 16


def test_zones(tmp_path):
    source = zones_from_mapping({
        'farm': [[35.70, 51.40], [35.70, 51.41], [35.71, 51.41], [35.71, 51.40]],
        'broken': [[35.70, 51.40]],
    })
    assert source.fetch_zone('farm').contains(35.705, 51.405)
    assert source.fetch_zone('broken').is_empty
    assert source.fetch_zone('nope') is None

    path = tmp_path / "zones.yaml"
    path.write_text("zones:\n  f1:\n    - [35.70, 51.40]\n    - [35.70, 51.41]\n    - [35.71, 51.41]\n")
    assert not load_zones(path).fetch_zone('f1').is_empty


def test_config_defaults():
    config = config_from_dict({})
    assert config == EngineConfig()
    assert config.thresholds.min_stoppage_seconds == 60
    assert config.filter.alpha == 0.35


def test_config_overrides(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("timezone: Europe/Amsterdam\nthresholds:\n  min_stoppage_seconds: 90\n")
    config = load_config(path)
    assert config.thresholds.min_stoppage_seconds == 90
    assert config.thresholds.stop_speed == 2.0
    assert config.tzinfo.key == "Europe/Amsterdam"


@pytest.mark.parametrize("raw", [
    {'timezone': 'Mars/Olympus'},
    {'workers': {'shards': 0}},
    {'filter': {'alpha': 0}},
    {'thresholds': 'fast'},
    {'presence': {'expected_work_hours': -1}},
])
def test_invalid_config(raw):
    with pytest.raises(ConfigError):
        config_from_dict(raw)


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_repository_config_loads():
    config = load_config(Path(__file__).parent.parent / "config.yaml")
    assert 'farm' in config.zones
    assert config.presence.expected_work_hours == 8
