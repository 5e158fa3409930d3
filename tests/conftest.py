"""Shared test fixtures for TimeWalk.

Unit tests never touch a database: sessions are MagicMocks whose query()
chain returns canned ORM objects. tests/test_integration.py runs against a
real PostGIS database when TIMEWALK_TEST_DATABASE_URL is set.
"""

import uuid
from datetime import date
from unittest.mock import MagicMock

import pytest
from shapely.geometry import Polygon, box

from timewalk.models import Building, BuildingParcel
from timewalk.policy import Subject
from timewalk.schemas import UserRole
from timewalk.spatial import to_element

# A block near Wall Street, lon/lat
BLOCK = box(-74.0100, 40.7060, -74.0090, 40.7068)
LOT = box(-74.0099, 40.7061, -74.0097, 40.7063)


def geojson_polygon(geom: Polygon = LOT) -> dict:
    return {"type": "Polygon", "coordinates": [list(map(list, geom.exterior.coords))]}


def make_query(results=None, first=None):
    """A chainable Query mock; .all() returns results."""
    query = MagicMock()
    for method in ("filter", "filter_by", "order_by", "offset", "limit", "join", "outerjoin", "with_for_update"):
        getattr(query, method).return_value = query
    query.all.return_value = list(results or [])
    query.first.return_value = first
    return query


def make_session(results=None, get=None):
    session = MagicMock()
    session.query.return_value = make_query(results)
    session.get.return_value = get
    return session


def make_building(
    building_id: str | None = "BLDG-1",
    valid_from: date = date(1776, 1, 1),
    valid_to: date | None = None,
    geometry: Polygon = LOT,
    **attrs,
) -> Building:
    return Building(
        id=attrs.pop("id", uuid.uuid4()),
        building_id=building_id,
        geometry=to_element(geometry),
        valid_from=valid_from,
        valid_to=valid_to,
        **attrs,
    )


def make_parcel(
    parcel_id: str | None = "LOT-1",
    valid_from: date = date(1660, 1, 1),
    valid_to: date | None = None,
    geometry: Polygon = LOT,
    **attrs,
) -> BuildingParcel:
    return BuildingParcel(
        id=attrs.pop("id", uuid.uuid4()),
        parcel_id=parcel_id,
        geometry=to_element(geometry),
        valid_from=valid_from,
        valid_to=valid_to,
        **attrs,
    )


@pytest.fixture()
def viewer() -> Subject:
    return Subject(user_id=uuid.uuid4(), role=UserRole.VIEWER)


@pytest.fixture()
def editor() -> Subject:
    return Subject(user_id=uuid.uuid4(), role=UserRole.EDITOR)


@pytest.fixture()
def admin() -> Subject:
    return Subject(user_id=uuid.uuid4(), role=UserRole.ADMIN)


@pytest.fixture()
def session() -> MagicMock:
    return make_session()
