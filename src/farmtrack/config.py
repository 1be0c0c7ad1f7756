"""Configuration loading for the tracking engine.

Settings live in a YAML file (``config.yaml`` by default). Every key is
optional; missing keys fall back to the defaults below.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


@dataclass(slots=True)
class ThresholdConfig:
    stop_speed: float = 2.0
    min_stoppage_seconds: int = 60
    consecutive_moving_points: int = 3


@dataclass(slots=True)
class FilterConfig:
    alpha: float = 0.35
    beta: float = 0.12
    outlier_speed_kmh: float = 70.0
    min_dt_seconds: float = 0.1


@dataclass(slots=True)
class PresenceConfig:
    exit_grace_minutes: int = 30
    expected_work_hours: float = 0.0


@dataclass(slots=True)
class ActivityConfig:
    minimum_presence_percentage: float = 30.0


@dataclass(slots=True)
class WorkerConfig:
    shards: int = 4
    io_timeout_seconds: float = 10.0


@dataclass(slots=True)
class EngineConfig:
    """Top-level configuration tree."""

    timezone: str = DEFAULT_TIMEZONE
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    data: Dict[str, Any] = field(default_factory=dict)
    analysis: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    zones: Dict[str, Any] = field(default_factory=dict)

    @property
    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as exc:
            raise ConfigError(f"Unknown timezone: {self.timezone}") from exc


def _section(cls, raw: Optional[Dict[str, Any]], name: str):
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = set(cls.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown keys in '%s': %s", name, ", ".join(sorted(unknown)))
    return cls(**{k: v for k, v in raw.items() if k in known})


def config_from_dict(raw: Optional[Dict[str, Any]]) -> EngineConfig:
    """Build an EngineConfig from an already-parsed mapping."""
    raw = raw or {}
    config = EngineConfig(
        timezone=raw.get('timezone', DEFAULT_TIMEZONE),
        thresholds=_section(ThresholdConfig, raw.get('thresholds'), 'thresholds'),
        filter=_section(FilterConfig, raw.get('filter'), 'filter'),
        presence=_section(PresenceConfig, raw.get('presence'), 'presence'),
        activity=_section(ActivityConfig, raw.get('activity'), 'activity'),
        workers=_section(WorkerConfig, raw.get('workers'), 'workers'),
        data=raw.get('data') or {},
        analysis=raw.get('analysis') or {},
        output=raw.get('output') or {},
        zones=raw.get('zones') or {},
    )
    _validate(config)
    return config


def load_config(config_path: Union[str, Path] = "config.yaml") -> EngineConfig:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        raw = yaml.safe_load(f)
    return config_from_dict(raw)


def _validate(config: EngineConfig) -> None:
    if config.thresholds.min_stoppage_seconds < 0:
        raise ConfigError("thresholds.min_stoppage_seconds must be >= 0")
    if config.thresholds.consecutive_moving_points < 1:
        raise ConfigError("thresholds.consecutive_moving_points must be >= 1")
    if not 0 < config.filter.alpha <= 1 or not 0 <= config.filter.beta <= 1:
        raise ConfigError("filter.alpha must be in (0, 1] and filter.beta in [0, 1]")
    if config.filter.min_dt_seconds <= 0:
        raise ConfigError("filter.min_dt_seconds must be > 0")
    if config.presence.expected_work_hours < 0:
        raise ConfigError("presence.expected_work_hours must be >= 0")
    if config.workers.shards < 1:
        raise ConfigError("workers.shards must be >= 1")
    # resolve eagerly so a typo fails at startup
    config.tzinfo
