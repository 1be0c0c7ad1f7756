"""Text report and tabular exports for analyzed GPS days.

The report lists data sources, parameters and per-entity metrics; the
tables hold one row per movement or stoppage, numbered the way fleet
reports number them (ignored stoppages get an ``I`` prefix).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .config import EngineConfig
from .models import AggregatedMetrics, SegmentationResult, format_duration

logger = logging.getLogger(__name__)

MOVEMENT_COLUMNS = [
    'index', 'start_time', 'end_time', 'duration_seconds', 'duration_formatted',
    'distance_km', 'distance_meters', 'avg_speed',
    'start_latitude', 'start_longitude', 'end_latitude', 'end_longitude',
]
STOPPAGE_COLUMNS = [
    'index', 'start_time', 'end_time', 'duration_seconds', 'duration_formatted',
    'duration_while_on', 'duration_while_off', 'latitude', 'longitude', 'status', 'ignored',
]


def movement_table(result: SegmentationResult) -> pd.DataFrame:
    """One row per movement run."""
    rows = []
    for i, m in enumerate(result.movements, start=1):
        rows.append({
            'index': i,
            'start_time': m.start_time.strftime('%H:%M:%S'),
            'end_time': m.end_time.strftime('%H:%M:%S'),
            'duration_seconds': m.duration_seconds,
            'duration_formatted': format_duration(m.duration_seconds),
            'distance_km': round(m.distance_km, 3),
            'distance_meters': round(m.distance_km * 1000, 2),
            'avg_speed': round(m.avg_speed, 2),
            'start_latitude': m.start_location[0],
            'start_longitude': m.start_location[1],
            'end_latitude': m.end_location[0],
            'end_longitude': m.end_location[1],
        })
    return pd.DataFrame(rows, columns=MOVEMENT_COLUMNS)


def stoppage_table(result: SegmentationResult) -> pd.DataFrame:
    """One row per stoppage; counted and ignored stoppages are numbered separately."""
    rows = []
    counted = ignored = 0
    for s in result.stoppages:
        if s.ignored:
            ignored += 1
            label = f"I{ignored}"
        else:
            counted += 1
            label = str(counted)
        rows.append({
            'index': label,
            'start_time': s.start_time.strftime('%H:%M:%S'),
            'end_time': s.end_time.strftime('%H:%M:%S'),
            'duration_seconds': s.duration_seconds,
            'duration_formatted': format_duration(s.duration_seconds),
            'duration_while_on': s.duration_while_on,
            'duration_while_off': s.duration_while_off,
            'latitude': s.location[0],
            'longitude': s.location[1],
            'status': s.status_at_start,
            'ignored': s.ignored,
        })
    return pd.DataFrame(rows, columns=STOPPAGE_COLUMNS)


def summary_table(metrics: Dict[str, AggregatedMetrics]) -> pd.DataFrame:
    """One row per entity with the display form of its metrics."""
    if not metrics:
        return pd.DataFrame()
    df = pd.DataFrame.from_dict({eid: m.to_dict() for eid, m in metrics.items()}, orient='index')
    df.index.name = 'entity_id'
    return df.sort_index()


class TrackingReportGenerator:
    """Generates the plain-text daily tracking report."""

    def __init__(self, config: EngineConfig, metadata: Optional[Dict[str, Any]] = None):
        """Initialize report generator.

        Args:
            config: Engine configuration (thresholds are echoed in the report)
            metadata: Source file metadata (records, date range, hash)
        """
        self.config = config
        self.metadata = metadata or {}

    def generate_report(
        self,
        metrics: Dict[str, AggregatedMetrics],
        output_file: Optional[Path] = None,
        zone_metrics: Optional[Dict[str, AggregatedMetrics]] = None,
        title: str = "GPS TRACKING REPORT",
    ) -> str:
        """Build the report text and optionally write it to *output_file*.

        Args:
            metrics: Whole-day metrics per entity
            output_file: Where to save the report, if given
            zone_metrics: Zone-scoped metrics per entity, if a target zone was set
            title: Report heading

        Returns:
            Report text
        """
        report: List[str] = []

        report.append("=" * 80)
        report.append(title)
        report.append("=" * 80)
        report.append(f"Report Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        report.append(f"Timezone: {self.config.timezone}")
        report.append(f"Entities: {len(metrics)}")
        report.append("")

        if self.metadata:
            report.append("DATA SOURCES")
            report.append("-" * 80)
            for file_info, meta in self.metadata.items():
                report.append(f"File: {file_info}")
                report.append(f"  Records: {meta.get('records')}")
                report.append(f"  Date range: {meta.get('date_range')}")
                report.append(f"  SHA256 hash: {meta.get('file_hash')}")
                report.append("")

        th = self.config.thresholds
        flt = self.config.filter
        report.append("PARAMETERS")
        report.append("-" * 80)
        report.append(f"  - Stop speed: {th.stop_speed} km/h (exactly this speed counts as stopped)")
        report.append(f"  - Minimum stoppage: {th.min_stoppage_seconds} s (shorter stops count as movement)")
        report.append(f"  - First movement: {th.consecutive_moving_points} consecutive moving fixes")
        report.append(f"  - Smoother gains: alpha={flt.alpha}, beta={flt.beta}")
        report.append(f"  - Outlier gate: {flt.outlier_speed_kmh} km/h")
        report.append("")

        report.append("RESULTS PER ENTITY")
        report.append("-" * 80)
        if not metrics:
            report.append("  No GPS data.")
        for entity_id in sorted(metrics):
            report.extend(self._entity_section(entity_id, metrics[entity_id]))
            if zone_metrics and entity_id in zone_metrics:
                report.append("  Inside target zone:")
                report.extend(self._metric_lines(zone_metrics[entity_id], indent="    "))
            report.append("")

        if len(metrics) > 1:
            fleet = AggregatedMetrics()
            for m in metrics.values():
                fleet = fleet.merge(m)
            report.append("FLEET TOTAL")
            report.append("-" * 80)
            report.extend(self._metric_lines(fleet, indent="  "))
            report.append("")

        report.append("=" * 80)

        report_text = '\n'.join(report)
        if output_file is not None:
            with open(output_file, 'w', encoding='utf-8') as f:
                f.write(report_text)
            logger.info("Report saved to %s", output_file)
        return report_text

    def _entity_section(self, entity_id: str, metrics: AggregatedMetrics) -> List[str]:
        lines = [f"Entity: {entity_id}"]
        if metrics.is_empty:
            lines.append("  No GPS data in the analyzed window.")
            return lines
        lines.extend(self._metric_lines(metrics, indent="  "))
        return lines

    @staticmethod
    def _metric_lines(metrics: AggregatedMetrics, indent: str) -> List[str]:
        d = metrics.to_dict()
        return [
            f"{indent}Distance moved: {d['movement_distance_km']:.3f} km",
            f"{indent}Movement time: {d['movement_duration_formatted']}",
            f"{indent}Stoppage time: {d['stoppage_duration_formatted']} "
            f"(on {format_duration(d['stoppage_duration_while_on_seconds'])}, "
            f"off {format_duration(d['stoppage_duration_while_off_seconds'])})",
            f"{indent}Stoppages: {d['stoppage_count']} (+{d['ignored_stoppage_count']} short, ignored)",
            f"{indent}Average speed: {d['average_speed']} km/h, max {d['max_speed']} km/h",
            f"{indent}Device on: {d['device_on_time'] or '-'}, "
            f"first movement: {d['first_movement_time'] or '-'}",
        ]

    def save_tables(self, details: Dict[str, SegmentationResult], output_dir: Path) -> List[Path]:
        """Write movement and stoppage CSVs per entity; returns written paths."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []
        for entity_id, result in details.items():
            for name, table in (('movements', movement_table(result)),
                                ('stoppages', stoppage_table(result))):
                path = output_dir / f"{entity_id}_{name}.csv"
                table.to_csv(path, index=False)
                written.append(path)
        return written
