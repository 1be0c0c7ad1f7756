#!/usr/bin/env python3
"""Main entry point for farm GPS tracking analysis.

Runs the batch pipeline over a CSV export: load → noise filter →
movement / zone segmentation → text report and detail tables.
"""

import argparse
import logging
import sys
from datetime import date
from pathlib import Path

import pandas as pd

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from farmtrack.config import load_config
from farmtrack.errors import TrackingError
from farmtrack.loader import FramePointSource, calculate_file_hash, read_points_csv, zones_from_mapping
from farmtrack.pipeline import TrackingService
from farmtrack.report import TrackingReportGenerator, summary_table
from farmtrack.storage import InMemoryAggregateStore, InMemorySessionStore


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Analyze tractor and worker GPS exports.")
    parser.add_argument("--config", default=str(Path(__file__).parent / "config.yaml"),
                        help="Path to config.yaml")
    parser.add_argument("--day", type=date.fromisoformat, default=None,
                        help="Only analyze this day (YYYY-MM-DD); default is every day in the data")
    parser.add_argument("--zone", default=None, help="Target zone id for zone-scoped metrics")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    """Run complete analysis pipeline."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("Farm GPS Tracking Analysis")
    print("=" * 60)
    print()

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"Error: Config file not found at {config_path}")
        print("Please create config.yaml first.")
        return 1

    try:
        config = load_config(config_path)
    except TrackingError as e:
        print(f"Error: {e}")
        return 1

    base = config_path.parent
    data_path = base / config.data.get('directory', 'data')
    if not data_path.exists():
        print(f"Error: Data directory not found at {data_path}")
        print("Please create data/ directory and add CSV exports.")
        return 1

    # Load data
    frames = []
    metadata = {}
    for file_name in config.data.get('files', []):
        file_path = data_path / file_name
        if not file_path.exists():
            print(f"  Warning: File not found: {file_path}")
            continue
        print(f"Loading {file_name}...")
        df = read_points_csv(file_path, tz=config.timezone)
        print(f"  Loaded {len(df)} fixes for {df['entity_id'].nunique()} entities")
        if not df.empty:
            frames.append(df)
            metadata[file_name] = {
                'records': len(df),
                'date_range': f"{df['timestamp'].min()} to {df['timestamp'].max()}",
                'file_hash': calculate_file_hash(file_path),
            }

    if not frames:
        print("\nNo GPS data loaded. Please check data files.")
        return 1

    combined = pd.concat(frames, ignore_index=True).sort_values(['entity_id', 'timestamp'], kind='stable')
    points = FramePointSource(combined.reset_index(drop=True))
    zones = zones_from_mapping(config.zones)
    zone_id = args.zone or config.analysis.get('target_zone')

    days = [args.day] if args.day else sorted(combined['timestamp'].dt.date.unique())
    entity_ids = points.entity_ids()

    print()
    print("Analyzing...")
    metrics = {}
    zone_metrics = {}
    details = {}
    with TrackingService(config, points, zones, InMemoryAggregateStore(), InMemorySessionStore()) as service:
        for day in days:
            try:
                day_metrics = service.analyze_days(entity_ids, day)
                if zone_id:
                    day_zone = service.analyze_days(entity_ids, day, zone_id=zone_id)
            except TrackingError as e:
                print(f"\nAnalysis failed for {day}: {e}")
                return 1
            for entity_id, m in day_metrics.items():
                if m.is_empty:
                    continue
                key = f"{entity_id}@{day}"
                metrics[key] = m
                details[key] = service.detail_day(entity_id, day)
                if zone_id:
                    zone_metrics[key] = day_zone[entity_id]
                print(f"  {key}: {m.movement_distance_km:.3f} km, "
                      f"{m.stoppage_count} stoppages")

    output_path = base / config.output.get('directory', 'output')
    output_path.mkdir(parents=True, exist_ok=True)

    summary_table(metrics).to_csv(output_path / config.output.get('summary_file', 'summary.csv'))
    report = TrackingReportGenerator(config, metadata)
    report_file = output_path / config.output.get('report_file', 'tracking_report.txt')
    report.generate_report(metrics, report_file, zone_metrics=zone_metrics or None)
    written = report.save_tables(details, output_path / "details")

    print()
    print("=" * 60)
    print("Analysis Complete")
    print("=" * 60)
    print(f"Report: {report_file}")
    print(f"Detail tables: {len(written)} files in {output_path / 'details'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
