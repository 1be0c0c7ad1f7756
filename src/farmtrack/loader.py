"""Loading GPS exports and zone definitions.

CSV exports are read with pandas and normalised to the columns
``entity_id, timestamp, latitude, longitude, speed, status``. Rows whose
timestamp cannot be parsed are dropped (the point cannot be placed in the
stream); rows with unparsable coordinates are kept with NaN so the noise
filter can substitute a prediction.
"""

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import numpy as np
import pandas as pd
import yaml

from .geo import Zone
from .models import GpsPoint
from .storage import InMemoryZoneSource

logger = logging.getLogger(__name__)

POINT_COLUMNS = ['entity_id', 'timestamp', 'latitude', 'longitude', 'speed', 'status']

# Alternative header names seen in tracker exports
COLUMN_ALIASES = {
    'imei': 'entity_id',
    'device_id': 'entity_id',
    'tracker_id': 'entity_id',
    'date_time': 'timestamp',
    'datetime': 'timestamp',
    'time': 'timestamp',
    'lat': 'latitude',
    'lng': 'longitude',
    'lon': 'longitude',
}


def parse_coordinate_string(coord_str: Any):
    """Parse a "lat,lng" string (or a two-item list) into floats.

    Returns (nan, nan) when parsing fails.
    """
    try:
        if isinstance(coord_str, (list, tuple)):
            return float(coord_str[0]), float(coord_str[1])
        text = str(coord_str).strip().strip('[]()')
        lat, lon = text.split(',')[:2]
        return float(lat), float(lon)
    except (ValueError, TypeError, IndexError):
        return float('nan'), float('nan')


def normalize_frame(df: pd.DataFrame, tz: Optional[Any] = None,
                    default_entity: str = 'unknown') -> pd.DataFrame:
    """Return *df* with canonical point columns, parsed types, sorted by entity and time."""
    if df.empty:
        return pd.DataFrame(columns=POINT_COLUMNS)

    df = df.rename(columns={c: COLUMN_ALIASES.get(c.strip().lower(), c.strip().lower())
                            for c in df.columns})

    if 'coordinate' in df.columns and ('latitude' not in df.columns or 'longitude' not in df.columns):
        parsed = df['coordinate'].map(parse_coordinate_string)
        df['latitude'] = parsed.map(lambda c: c[0])
        df['longitude'] = parsed.map(lambda c: c[1])

    if 'entity_id' not in df.columns:
        df['entity_id'] = default_entity
    if 'speed' not in df.columns:
        df['speed'] = 0.0
    if 'status' not in df.columns:
        df['status'] = 1
    missing = [c for c in ('timestamp', 'latitude', 'longitude') if c not in df.columns]
    if missing:
        raise ValueError(f"GPS export is missing columns: {', '.join(missing)}")

    df['entity_id'] = df['entity_id'].astype(str)
    timestamps = pd.to_datetime(df['timestamp'], errors='coerce', utc=tz is None)
    if tz is not None:
        if timestamps.dt.tz is None:
            timestamps = timestamps.dt.tz_localize(tz, ambiguous='NaT', nonexistent='NaT')
        else:
            timestamps = timestamps.dt.tz_convert(tz)
    df['timestamp'] = timestamps

    bad_ts = df['timestamp'].isna()
    if bad_ts.any():
        logger.warning("Dropping %d rows with unparsable timestamps", int(bad_ts.sum()))
        df = df.loc[~bad_ts].copy()

    df['latitude'] = pd.to_numeric(df['latitude'], errors='coerce')
    df['longitude'] = pd.to_numeric(df['longitude'], errors='coerce')
    bad_coords = ~np.isfinite(df['latitude'].to_numpy(dtype=float)) | \
        ~np.isfinite(df['longitude'].to_numpy(dtype=float))
    if bad_coords.any():
        logger.warning("%d rows have unparsable coordinates; the filter will substitute them",
                       int(bad_coords.sum()))

    df['speed'] = pd.to_numeric(df['speed'], errors='coerce').fillna(0.0).clip(lower=0.0)
    df['status'] = pd.to_numeric(df['status'], errors='coerce').fillna(0).astype(int)

    df = df[POINT_COLUMNS].sort_values(['entity_id', 'timestamp'], kind='stable')
    return df.reset_index(drop=True)


def read_points_csv(file_path: Union[str, Path], tz: Optional[Any] = None) -> pd.DataFrame:
    """Read and normalise a CSV export."""
    file_path = Path(file_path)
    df = pd.read_csv(file_path)
    logger.info("Read %d rows from %s", len(df), file_path.name)
    return normalize_frame(df, tz=tz)


def iter_points(df: pd.DataFrame) -> Iterator[GpsPoint]:
    """Yield GpsPoints row by row from a normalised frame."""
    for row in df.itertuples(index=False):
        yield GpsPoint(
            entity_id=row.entity_id,
            timestamp=row.timestamp.to_pydatetime(),
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            speed=float(row.speed),
            status=int(row.status),
        )


def calculate_file_hash(file_path: Union[str, Path]) -> str:
    """First 16 hex chars of the file's SHA256, for the report's source list."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()[:16]


class FramePointSource:
    """PointSource backed by a normalised pandas DataFrame."""

    def __init__(self, df: pd.DataFrame):
        self.df = df

    @classmethod
    def from_csv(cls, file_path: Union[str, Path], tz: Optional[Any] = None) -> "FramePointSource":
        return cls(read_points_csv(file_path, tz=tz))

    def entity_ids(self) -> List[str]:
        return sorted(self.df['entity_id'].unique().tolist())

    def fetch_points(self, entity_id: str, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> Iterator[GpsPoint]:
        df = self.df[self.df['entity_id'] == entity_id]
        if start is not None:
            df = df[df['timestamp'] >= start]
        if end is not None:
            df = df[df['timestamp'] <= end]
        return iter_points(df)


# ----------------------------------------------------------------------
# Zones
# ----------------------------------------------------------------------

def zones_from_mapping(raw: Optional[Dict[str, Any]]) -> InMemoryZoneSource:
    """Build a zone source from ``{zone_id: [[lat, lon], ...]}``."""
    source = InMemoryZoneSource()
    for zone_id, vertices in (raw or {}).items():
        zone = Zone(vertices, zone_id=str(zone_id))
        if zone.is_empty:
            logger.warning("Zone %s has fewer than 3 usable vertices; it will match nothing", zone_id)
        source.add(zone)
    return source


def load_zones(file_path: Union[str, Path]) -> InMemoryZoneSource:
    """Load zones from a YAML file with a top-level ``zones`` mapping."""
    with open(file_path, 'r') as f:
        raw = yaml.safe_load(f) or {}
    return zones_from_mapping(raw.get('zones', raw))
