"""Geometry primitives: great-circle distance and zone containment."""

import math
from typing import Iterable, Optional, Sequence

from geopy.distance import great_circle
from shapely.geometry import Point, Polygon as ShapelyPolygon
from shapely.prepared import prep

from .models import Coordinate

EARTH_RADIUS_KM = 6371.0
MIN_POLYGON_VERTICES = 3


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in kilometers between two (lat, lon) pairs."""
    if a == b:
        return 0.0
    return great_circle(a, b, radius=EARTH_RADIUS_KM).km


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """False for NaN/inf and for the (0, 0) placeholder trackers send without a fix."""
    if lat is None or lon is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    if lat == 0.0 and lon == 0.0:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


class Zone:
    """A named polygon with a prepared geometry for fast containment tests.

    Vertices are (lat, lon) pairs; the ring is closed implicitly. A zone with
    fewer than three vertices is empty and contains nothing. Points on the
    boundary count as inside.
    """

    def __init__(self, vertices: Optional[Iterable[Sequence[float]]], zone_id: Optional[str] = None):
        self.zone_id = zone_id
        self.vertices = [(float(v[0]), float(v[1])) for v in (vertices or [])]
        self._prepared = None
        if len(self.vertices) >= MIN_POLYGON_VERTICES:
            # shapely works in (x, y) = (lon, lat)
            shape = ShapelyPolygon([(lon, lat) for lat, lon in self.vertices])
            if not shape.is_valid:
                shape = shape.buffer(0)
            if not shape.is_empty:
                self._prepared = prep(shape)

    @property
    def is_empty(self) -> bool:
        return self._prepared is None

    def contains(self, lat: float, lon: float) -> bool:
        if self._prepared is None:
            return False
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return False
        return self._prepared.intersects(Point(lon, lat))

    def contains_point(self, point) -> bool:
        return self.contains(point.latitude, point.longitude)

    def __repr__(self) -> str:
        return f"Zone({self.zone_id!r}, vertices={len(self.vertices)})"


def point_in_polygon(point: Coordinate, polygon) -> bool:
    """Containment test for a (lat, lon) pair against a Zone or a vertex list."""
    zone = polygon if isinstance(polygon, Zone) else Zone(polygon)
    return zone.contains(point[0], point[1])
