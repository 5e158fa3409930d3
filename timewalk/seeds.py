"""Reference data loaded on every start.

The six datasets of the QGIS project. Seeding is idempotent by name, so
rows edited after the first run are left alone.
"""

import logging

from sqlalchemy.orm import Session

from .models import DataSource
from .policy import ResourceKind, Subject
from .repository import Repository

logger = logging.getLogger(__name__)

SEED_DATA_SOURCES: list[dict[str, str]] = [
    {
        "name": "Manhattan 1609",
        "description": "Historical data for Manhattan in 1609",
        "time_period": "1609",
        "data_type": "vector",
        "data_category": "parcels",
        "file_path": "vector/1609/",
    },
    {
        "name": "Manhattan 1660",
        "description": "Historical data for Manhattan in 1660",
        "time_period": "1660",
        "data_type": "vector",
        "data_category": "parcels",
        "file_path": "vector/1660/",
    },
    {
        "name": "Manhattan 1776",
        "description": "Historical building parcels for Manhattan in 1776",
        "time_period": "1776",
        "data_type": "vector",
        "data_category": "parcels",
        "file_path": "vector/1776/",
    },
    {
        "name": "DEM Data",
        "description": "Digital Elevation Models",
        "time_period": "1776",
        "data_type": "raster",
        "data_category": "elevation",
        "file_path": "raster/DEM/",
    },
    {
        "name": "Historical Maps",
        "description": "Historical map images",
        "time_period": "1776",
        "data_type": "raster",
        "data_category": "historical",
        "file_path": "raster/HistoricalMaps/",
    },
    {
        "name": "Boundary Masks",
        "description": "Boundary and mask files",
        "time_period": "1776",
        "data_type": "vector",
        "data_category": "boundaries",
        "file_path": "vector/Masks/",
    },
]


def seed_data_sources(db: Session) -> int:
    """Insert any missing seed data sources. Returns how many were created."""
    repo = Repository(db, Subject.service_role(), ResourceKind.DATA_SOURCES)
    existing = {name for (name,) in db.query(DataSource.name).all()}

    created = 0
    for seed in SEED_DATA_SOURCES:
        if seed["name"] in existing:
            continue
        repo.insert(seed)
        created += 1
        logger.info(f"Seeded data source: {seed['name']}")
    return created
