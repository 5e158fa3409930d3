"""Import a QGIS GeoJSON export into a versioned TimeWalk table.

Pipeline:
1. Load the FeatureCollection (local file or URL)
2. Reproject from the data source's coordinate system, validate and measure
3. Compare with the versions valid on --valid-from, by logical key
4. Insert new objects, supersede changed ones, correct versions that start on
   --valid-from in place, skip unchanged ones

Usage:
    uv run python scripts/import_features.py data/1776/buildings.geojson --layer building \\
        --valid-from 1776-01-01 --data-source "Manhattan 1776"
    uv run python scripts/import_features.py https://example.org/parcels.geojson --layer parcel \\
        --valid-from 1660-01-01 --dry-run

QGIS: Layer > Export > Save Features As... > GeoJSON. Keep the layer's own
CRS; the data source's coordinate_system tells this script how to read it.
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

import httpx

from timewalk.database import SessionLocal
from timewalk.models import DataSource
from timewalk.policy import Subject
from timewalk.repository import VersionedRepository
from timewalk.spatial import WGS84
from timewalk.temporal import VersionOverlapError
from timewalk.transformations import (
    LAYER_KINDS,
    ImportAction,
    Layer,
    apply_plan,
    current_versions,
    parse_collection,
    plan_import,
)


def load_collection(source: str) -> dict:
    """Read GeoJSON from a path or an http(s) URL."""
    if source.startswith(("http://", "https://")):
        print(f"Downloading {source}...")
        response = httpx.get(source, timeout=60.0, follow_redirects=True)
        response.raise_for_status()
        return response.json()
    return json.loads(Path(source).read_text())


def print_header(title: str):
    print("=" * 60)
    print(title)
    print("=" * 60)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Import a QGIS GeoJSON export into a versioned TimeWalk table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("source", help="GeoJSON file path or URL")
    parser.add_argument(
        "--layer",
        required=True,
        choices=[layer.value for layer in Layer],
        help="Which table the features belong to",
    )
    parser.add_argument(
        "--valid-from",
        required=True,
        type=date.fromisoformat,
        help="Day the imported versions take effect (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--data-source",
        help="Name of the data_sources row; supplies source_id and the source projection",
    )
    parser.add_argument(
        "--crs",
        help="Source projection, overriding the data source's coordinate_system (e.g. EPSG:3857)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the plan without writing anything",
    )
    args = parser.parse_args()
    layer = Layer(args.layer)

    print_header(f"TimeWalk import: {layer.value} as of {args.valid_from}")

    db = SessionLocal()
    try:
        source_id = None
        crs = args.crs or WGS84
        if args.data_source:
            data_source = db.query(DataSource).filter(DataSource.name == args.data_source).first()
            if not data_source:
                print(f"Data source not found: {args.data_source}")
                return 1
            source_id = data_source.id
            crs = args.crs or data_source.coordinate_system or WGS84
        print(f"Source projection: {crs}")

        parsed = parse_collection(load_collection(args.source), layer, args.valid_from, source_id, crs)
        print(f"Valid features: {len(parsed.payloads)}")
        if parsed.errors:
            print(f"Rejected features: {len(parsed.errors)}")
            for error in parsed.errors[:20]:
                print(f"  {error}")
        if parsed.unmapped_attributes:
            print(f"Unmapped attributes: {', '.join(parsed.unmapped_attributes)}")

        repo = VersionedRepository(db, Subject.service_role(), LAYER_KINDS[layer])
        try:
            current = current_versions(repo, args.valid_from)
        except VersionOverlapError as e:
            print(f"Aborting: {e}")
            print("Resolve the overlapping versions before importing.")
            return 1

        plan = plan_import(parsed.payloads, current)
        print()
        print(f"Insert:    {plan.count(ImportAction.INSERT)}")
        print(f"Supersede: {plan.count(ImportAction.SUPERSEDE)}")
        print(f"Update:    {plan.count(ImportAction.UPDATE)}")
        print(f"Skip:      {plan.count(ImportAction.SKIP)}")
        if plan.duplicate_keys:
            print(f"Duplicate keys (first feature kept): {', '.join(plan.duplicate_keys)}")

        if args.dry_run:
            for change in plan.changes:
                if change.action in (ImportAction.SUPERSEDE, ImportAction.UPDATE):
                    print(f"  {change.key}: {change.action.value} {', '.join(change.changed_fields)}")
            print("\nDry run: nothing written.")
            return 0

        stats = apply_plan(plan, repo, layer)
        print()
        print_header("Import complete!")
        print(f"  Inserted:   {stats.records_inserted}")
        print(f"  Superseded: {stats.records_superseded}")
        print(f"  Updated:    {stats.records_updated}")
        print(f"  Skipped:    {stats.records_skipped}")
        if stats.validation_errors:
            print(f"  Errors:     {len(stats.validation_errors)}")
            for error in stats.validation_errors[:20]:
                print(f"    {error}")
        return 0 if not stats.validation_errors else 2
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
