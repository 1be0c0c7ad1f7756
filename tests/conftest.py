#
# conftest.py - pytest configuration and common fixtures
#
import logging
from datetime import datetime, timedelta, timezone

import pytest

from farmtrack.geo import Zone
from farmtrack.models import GpsPoint

BASE_TIME = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)

# a ~1.1 km square field
FIELD = [(35.7000, 51.4000), (35.7000, 51.4100), (35.7100, 51.4100), (35.7100, 51.4000)]
INSIDE = (35.7050, 51.4050)
OUTSIDE = (35.8000, 51.5000)


def pytest_addoption(parser):
    parser.addoption(
        "--loglevel",
        action="store",
        default=None,
        help="Set log level (e.g. DEBUG, INFO, WARNING)",
    )


def pytest_configure(config):
    loglevel = config.getoption("--loglevel")
    if loglevel:
        logging.basicConfig(level=getattr(logging, loglevel.upper(), logging.WARNING))


def make_point(seconds, speed=0.0, status=1, lat=INSIDE[0], lon=INSIDE[1], entity_id="tractor-1"):
    """GpsPoint at BASE_TIME + seconds."""
    return GpsPoint(
        entity_id=entity_id,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        latitude=lat,
        longitude=lon,
        speed=speed,
        status=status,
    )


@pytest.fixture
def point():
    return make_point


@pytest.fixture
def field_zone():
    return Zone(FIELD, zone_id="field-1")


@pytest.fixture
def base_time():
    return BASE_TIME
