"""Farm GPS tracking - trajectory analysis and zone presence engine."""

__version__ = "1.0.0"

from .activity import ActivityStatusMachine
from .config import EngineConfig, load_config
from .errors import OutOfOrderPointError, PersistenceConflictError, TrackingError
from .geo import Zone, distance_km, point_in_polygon
from .models import AggregatedMetrics, AttendanceSession, GpsPoint, ScheduledActivity
from .noise_filter import NoiseFilter
from .pipeline import ShardedExecutor, TrackingService
from .presence import PresenceSessionTracker
from .report import TrackingReportGenerator
from .segmenter import MovementSegmenter
from .zone_segmenter import ZoneSegmenter

__all__ = [
    "ActivityStatusMachine",
    "AggregatedMetrics",
    "AttendanceSession",
    "EngineConfig",
    "GpsPoint",
    "MovementSegmenter",
    "NoiseFilter",
    "OutOfOrderPointError",
    "PersistenceConflictError",
    "PresenceSessionTracker",
    "ScheduledActivity",
    "ShardedExecutor",
    "TrackingError",
    "TrackingReportGenerator",
    "TrackingService",
    "Zone",
    "ZoneSegmenter",
    "distance_km",
    "load_config",
    "point_in_polygon",
]
