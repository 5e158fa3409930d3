"""Tests for the pydantic create schemas."""

from datetime import date
from decimal import Decimal

import pytest
from geoalchemy2 import WKBElement
from pydantic import ValidationError

from conftest import LOT, geojson_polygon
from timewalk.schemas import (
    BuildingCreate,
    BuildingNoteCreate,
    BuildingParcelCreate,
    DataSourceCreate,
    MediaAssetCreate,
    StreetCreate,
    TimePeriod,
    UserRole,
)


def building(**overrides) -> dict:
    payload = {
        "building_id": "B1",
        "timewalk_id": "TW_BLDG_001",
        "geometry": geojson_polygon(LOT),
        "valid_from": "1776-01-01",
    }
    payload.update(overrides)
    return payload


class TestSourceConfidence:
    @pytest.mark.parametrize("value", [0, "0.5", 1])
    def test_inside_unit_interval(self, value):
        assert BuildingCreate(**building(source_confidence=value)).source_confidence == Decimal(str(value))

    @pytest.mark.parametrize("value", [-0.1, 1.01, 5])
    def test_outside_unit_interval(self, value):
        with pytest.raises(ValidationError):
            BuildingCreate(**building(source_confidence=value))
        with pytest.raises(ValidationError):
            BuildingParcelCreate(parcel_id="L1", geometry=geojson_polygon(), valid_from=date(1660, 1, 1), source_confidence=value)


class TestClosedEnums:
    def test_time_period(self):
        source = DataSourceCreate(
            name="Manhattan 1776",
            time_period="1776",
            data_type="vector",
            data_category="parcels",
        )
        assert source.time_period is TimePeriod.BRITISH_1776
        assert source.coordinate_system == "EPSG:3857"

    @pytest.mark.parametrize(
        "field,value",
        [("time_period", "1812"), ("data_type", "pointcloud"), ("data_category", "roads")],
    )
    def test_values_outside_are_rejected(self, field, value):
        payload = {
            "name": "X",
            "time_period": "1609",
            "data_type": "vector",
            "data_category": "parcels",
            field: value,
        }
        with pytest.raises(ValidationError):
            DataSourceCreate(**payload)

    def test_media_type(self):
        with pytest.raises(ValidationError):
            MediaAssetCreate(kind="hologram", storage_path="media/x.bin")

    def test_user_role_values(self):
        assert [role.value for role in UserRole] == ["viewer", "editor", "admin"]


class TestValidityWindow:
    def test_valid_from_required(self):
        with pytest.raises(ValidationError):
            BuildingCreate(building_id="B1", geometry=geojson_polygon())

    def test_empty_window_rejected(self):
        with pytest.raises(ValidationError, match="valid_to must be later"):
            BuildingCreate(**building(valid_to="1776-01-01"))


class TestGeometry:
    def test_area_is_measured(self):
        payload = BuildingParcelCreate(parcel_id="L1", geometry=geojson_polygon(LOT), valid_from=date(1660, 1, 1))
        assert payload.area_sq_m > 0
        assert payload.perimeter_m > 0

    def test_supplied_area_is_kept(self):
        assert BuildingCreate(**building(area_sq_m="12.5")).area_sq_m == Decimal("12.5")

    def test_wrong_geometry_type(self):
        with pytest.raises(ValidationError):
            BuildingCreate(**building(geometry={"type": "Point", "coordinates": [-74.0, 40.7]}))

    def test_street_linestring_promoted(self):
        street = StreetCreate(
            name="Broad Way",
            geometry={"type": "LineString", "coordinates": [[-74.013, 40.704], [-74.010, 40.712]]},
            valid_from=date(1660, 1, 1),
        )
        assert street.geometry["type"] == "MultiLineString"

    def test_to_row_converts_geometry(self):
        row = BuildingCreate(**building()).to_row()
        assert isinstance(row["geometry"], WKBElement)
        assert row["timewalk_id"] == "TW_BLDG_001"


def test_unknown_fields_rejected():
    with pytest.raises(ValidationError):
        BuildingCreate(**building(created_by="00000000-0000-0000-0000-000000000000"))


def test_demolition_before_construction():
    with pytest.raises(ValidationError):
        BuildingCreate(**building(construction_year=1750, demolition_year=1740))


def test_note_confidence_level_is_free_text():
    note = BuildingNoteCreate(
        building_id="6f1c2b9e-6a35-4c52-9f0e-2b1f8d1f4a10",
        researcher_name="  A. Researcher ",
        note_text="Deed book 12, p. 40",
        confidence_level="probable",
    )
    assert note.researcher_name == "A. Researcher"
    assert note.confidence_level == "probable"
    with pytest.raises(ValidationError):
        BuildingNoteCreate(
            building_id="6f1c2b9e-6a35-4c52-9f0e-2b1f8d1f4a10",
            researcher_name="A. Researcher",
            note_text="x",
            confidence_level="x" * 51,
        )
