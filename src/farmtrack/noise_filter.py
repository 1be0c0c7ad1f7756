"""Noise filtering for raw GPS fixes.

Two stages, both streaming:

1. Spike correction over a 3-point sliding window. A lone moving fix between
   two stopped fixes is forced to speed 0; a lone stopped fix between two
   moving fixes gets the average of its neighbours' speeds.
2. Coordinate smoothing with a constant-velocity alpha-beta filter. Fixes
   whose implied speed from the prediction exceeds the outlier gate, and
   fixes with missing or zero coordinates, are replaced by the prediction so
   the stream never loses a timestamp.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, Optional, Tuple

import numpy as np

from .config import FilterConfig
from .geo import distance_km, is_valid_coordinate
from .models import GpsPoint

logger = logging.getLogger(__name__)

# Speed assigned to a corrected stoppage spike must not look like a stop again
MIN_CORRECTED_SPEED = 1.0


# ----------------------------------------------------------------------
# Spike correction
# ----------------------------------------------------------------------

def _spike_moving(p: GpsPoint) -> bool:
    return p.status == 1 and p.speed > 0


def _spike_stopped(p: GpsPoint) -> bool:
    return p.speed == 0


def correct_spike(prev: GpsPoint, curr: GpsPoint, nxt: GpsPoint) -> GpsPoint:
    """Correct the middle point of a 3-point window."""
    if _spike_moving(curr) and _spike_stopped(prev) and _spike_stopped(nxt):
        return curr.with_speed(0.0)
    if _spike_stopped(curr) and _spike_moving(prev) and _spike_moving(nxt):
        return curr.with_speed(max((prev.speed + nxt.speed) / 2, MIN_CORRECTED_SPEED))
    return curr


def correct_spikes(points: Iterable[GpsPoint]) -> Iterator[GpsPoint]:
    """Yield points with isolated speed spikes corrected.

    The first and last points pass through unmodified. The left neighbour of
    each window is the already-corrected point, so a correction is never
    undone by the next window.
    """
    prev: Optional[GpsPoint] = None
    curr: Optional[GpsPoint] = None
    for nxt in points:
        if curr is None:
            curr = nxt
            continue
        if prev is None:
            # first point of the stream
            yield curr
        else:
            curr = correct_spike(prev, curr, nxt)
            yield curr
        prev, curr = curr, nxt
    if curr is not None:
        yield curr


# ----------------------------------------------------------------------
# Coordinate smoothing
# ----------------------------------------------------------------------

@dataclass(slots=True)
class SmootherState:
    """Alpha-beta filter state for one entity. Velocities are degrees/second."""

    lat: float
    lon: float
    v_lat: float
    v_lon: float
    timestamp: datetime


def smooth_step(state: Optional[SmootherState], point: GpsPoint,
                config: FilterConfig) -> Tuple[Optional[SmootherState], GpsPoint]:
    """Advance the filter by one point.

    Returns the new state and the point to emit; the input state is not
    modified.
    """
    valid = is_valid_coordinate(point.latitude, point.longitude)

    if state is None:
        if not valid:
            logger.warning("No position for %s at %s and no filter state yet; passing through",
                           point.entity_id, point.timestamp)
            return None, point
        return SmootherState(point.latitude, point.longitude, 0.0, 0.0, point.timestamp), point

    dt = max((point.timestamp - state.timestamp).total_seconds(), config.min_dt_seconds)
    pred_lat = state.lat + state.v_lat * dt
    pred_lon = state.lon + state.v_lon * dt

    if not valid:
        logger.warning("Malformed position for %s at %s; using prediction",
                       point.entity_id, point.timestamp)
        meas_lat, meas_lon = pred_lat, pred_lon
    else:
        meas_lat, meas_lon = point.latitude, point.longitude
        implied_kmh = distance_km((pred_lat, pred_lon), (meas_lat, meas_lon)) / (dt / 3600)
        if implied_kmh > config.outlier_speed_kmh:
            logger.debug("Outlier for %s at %s (%.1f km/h from prediction)",
                         point.entity_id, point.timestamp, implied_kmh)
            meas_lat, meas_lon = pred_lat, pred_lon

    res_lat = meas_lat - pred_lat
    res_lon = meas_lon - pred_lon
    new_state = SmootherState(
        lat=pred_lat + config.alpha * res_lat,
        lon=pred_lon + config.alpha * res_lon,
        v_lat=state.v_lat + (config.beta / dt) * res_lat,
        v_lon=state.v_lon + (config.beta / dt) * res_lon,
        timestamp=point.timestamp,
    )
    return new_state, point.with_position(new_state.lat, new_state.lon)


class CoordinateSmoother:
    """Streaming smoother holding the state of a single entity."""

    def __init__(self, config: Optional[FilterConfig] = None, state: Optional[SmootherState] = None):
        self.config = config or FilterConfig()
        self.state = state

    def smooth(self, points: Iterable[GpsPoint]) -> Iterator[GpsPoint]:
        for point in points:
            self.state, out = smooth_step(self.state, point, self.config)
            yield out


class NoiseFilter:
    """Spike correction followed by coordinate smoothing, per entity.

    Holds one ``SmootherState`` per entity id. Callers must not feed the same
    entity from two threads at once; the pipeline shards work by entity id.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()
        self._states: Dict[str, SmootherState] = {}

    def state_for(self, entity_id: str) -> Optional[SmootherState]:
        return self._states.get(entity_id)

    def set_state(self, entity_id: str, state: Optional[SmootherState]) -> None:
        if state is not None:
            self._states[entity_id] = state

    def reset(self, entity_id: Optional[str] = None) -> None:
        if entity_id is None:
            self._states.clear()
        else:
            self._states.pop(entity_id, None)

    def filter(self, points: Iterable[GpsPoint]) -> Iterator[GpsPoint]:
        """Lazily filter one entity's chronologically ordered stream."""
        for point in correct_spikes(points):
            state, out = smooth_step(self._states.get(point.entity_id), point, self.config)
            if state is not None:
                self._states[point.entity_id] = state
            yield out


def valid_coordinate_mask(latitudes, longitudes) -> np.ndarray:
    """Vectorised form of ``is_valid_coordinate`` for array inputs."""
    lat = np.asarray(latitudes, dtype=float)
    lon = np.asarray(longitudes, dtype=float)
    mask = np.isfinite(lat) & np.isfinite(lon)
    mask &= ~((lat == 0.0) & (lon == 0.0))
    mask &= (np.abs(lat) <= 90.0) & (np.abs(lon) <= 180.0)
    return mask
