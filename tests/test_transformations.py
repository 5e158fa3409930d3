"""Tests for GeoJSON ingestion planning."""

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from shapely.geometry import box

from conftest import LOT, geojson_polygon, make_building, make_session
from timewalk.policy import Subject
from timewalk.repository import ConstraintViolationError, VersionedRepository
from timewalk.schemas import BuildingCreate
from timewalk.spatial import GeometryError, wgs84_to_mercator
from timewalk.temporal import VersionOverlapError
from timewalk.transformations import (
    ImportAction,
    Layer,
    apply_plan,
    carried_fields,
    changed_fields,
    current_versions,
    normalize_properties,
    parse_collection,
    parse_feature,
    plan_import,
)

IMPORT_DATE = date(1800, 6, 1)


def feature(properties: dict, geometry: dict | None = None) -> dict:
    return {"type": "Feature", "properties": properties, "geometry": geometry or geojson_polygon(LOT)}


def mercator_polygon(geom) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[list(wgs84_to_mercator(x, y)) for x, y in geom.exterior.coords]],
    }


class TestNormalizeProperties:
    def test_shapefile_names(self):
        fields, unmapped = normalize_properties(
            {"BLDG_ID": "B1", "TIMEWALK_I": "TW_BLDG_001", "STORIES": 3, "FID": 7, "COLOR": "red"},
            Layer.BUILDING,
        )
        assert fields == {"building_id": "B1", "timewalk_id": "TW_BLDG_001", "floors": 3}
        assert unmapped == ["COLOR"]

    def test_column_names_pass_through(self):
        fields, _ = normalize_properties({"owner_name": "Van Cortlandt", "lot_number": "12"}, Layer.PARCEL)
        assert fields == {"owner_name": "Van Cortlandt", "lot_number": "12"}

    def test_blank_values_dropped(self):
        fields, _ = normalize_properties({"OWNER": "   ", "LOT": ""}, Layer.PARCEL)
        assert fields == {}


class TestParseFeature:
    def test_mercator_feature_reprojected_and_measured(self):
        payload = parse_feature(
            feature({"PARCEL_ID": "LOT-1", "CONF": "0.8"}, mercator_polygon(LOT)),
            Layer.PARCEL,
            date(1660, 1, 1),
            crs="EPSG:3857",
        )
        assert payload.parcel_id == "LOT-1"
        assert payload.valid_from == date(1660, 1, 1)
        assert payload.source_confidence == Decimal("0.8")
        assert payload.area_sq_m > 0
        minx, miny, maxx, maxy = LOT.bounds
        ring = payload.geometry["coordinates"][0]
        assert min(x for x, _ in ring) == pytest.approx(minx)
        assert max(y for _, y in ring) == pytest.approx(maxy)

    def test_source_id_only_where_the_table_has_one(self):
        source_id = uuid.uuid4()
        street = parse_feature(
            feature({"NAME": "Broad Way"}, {"type": "LineString", "coordinates": [[-74.013, 40.704], [-74.01, 40.712]]}),
            Layer.STREET,
            date(1660, 1, 1),
            source_id=source_id,
        )
        assert street.name == "Broad Way"
        building = parse_feature(feature({"BLDG_ID": "B1"}), Layer.BUILDING, date(1776, 1, 1), source_id=source_id)
        assert building.source_id == source_id

    def test_feature_valid_from_overrides_default(self):
        payload = parse_feature(feature({"BLDG_ID": "B1", "VALID_FROM": "1790-05-01"}), Layer.BUILDING, date(1776, 1, 1))
        assert payload.valid_from == date(1790, 5, 1)

    def test_missing_geometry(self):
        with pytest.raises(GeometryError):
            parse_feature({"type": "Feature", "properties": {}, "geometry": None}, Layer.BUILDING, IMPORT_DATE)


class TestParseCollection:
    def test_bad_features_are_reported(self):
        collection = {
            "type": "FeatureCollection",
            "features": [
                feature({"BLDG_ID": "B1"}),
                feature({"BLDG_ID": "B2", "CONF": "7"}),
                feature({"BLDG_ID": "B3"}, {"type": "Point", "coordinates": [-74.0, 40.7]}),
            ],
        }
        parsed = parse_collection(collection, Layer.BUILDING, IMPORT_DATE)
        assert [p.building_id for p in parsed.payloads] == ["B1"]
        assert len(parsed.errors) == 2
        assert parsed.errors[0].startswith("feature 1:")

    def test_requires_feature_collection(self):
        with pytest.raises(GeometryError):
            parse_collection({"type": "Feature"}, Layer.BUILDING, IMPORT_DATE)


class TestPlanImport:
    def payload(self, building_id="B1", geometry=LOT, **fields) -> BuildingCreate:
        return BuildingCreate(building_id=building_id, geometry=geojson_polygon(geometry), valid_from=IMPORT_DATE, **fields)

    def test_insert_supersede_skip(self):
        unchanged = make_building("B1", name="Tavern")
        moved = make_building("B2")
        current = {"B1": unchanged, "B2": moved}

        plan = plan_import(
            [
                self.payload("B1", name="Tavern"),
                self.payload("B2", geometry=box(-74.0100, 40.7060, -74.0095, 40.7065)),
                self.payload("B3"),
            ],
            current,
        )

        actions = {change.key: change.action for change in plan.changes}
        assert actions == {"B1": ImportAction.SKIP, "B2": ImportAction.SUPERSEDE, "B3": ImportAction.INSERT}
        superseded = next(c for c in plan.changes if c.key == "B2")
        assert superseded.current_id == moved.id
        assert superseded.changed_fields == ["geometry"]
        assert plan.count(ImportAction.INSERT) == 1

    def test_same_epoch_change_is_a_correction(self):
        current = make_building("B1", valid_from=IMPORT_DATE, floors=2)
        plan = plan_import([self.payload("B1", floors=3)], {"B1": current})
        [change] = plan.changes
        assert change.action is ImportAction.UPDATE
        assert change.current_id == current.id
        assert change.changed_fields == ["floors"]

    def test_attribute_change(self):
        current = make_building("B1", owner_name="De Peyster")
        assert changed_fields(self.payload(owner_name="Livingston"), current) == ["owner_name"]

    def test_duplicate_keys_reported(self):
        plan = plan_import([self.payload("B1"), self.payload("B1", name="dup")], {})
        assert len(plan.changes) == 1
        assert plan.duplicate_keys == ["B1"]

    def test_unkeyed_features_always_insert(self):
        plan = plan_import([self.payload(None), self.payload(None)], {})
        assert [c.action for c in plan.changes] == [ImportAction.INSERT, ImportAction.INSERT]


class TestCurrentVersions:
    def test_by_key(self):
        b1 = make_building("B1", valid_from=date(1776, 1, 1))
        repo = VersionedRepository(make_session(results=[b1]), Subject.service_role(), "buildings")
        assert current_versions(repo, IMPORT_DATE) == {"B1": b1}

    def test_overlapping_versions_abort(self):
        rows = [make_building("B1", valid_from=date(1776, 1, 1)), make_building("B1", valid_from=date(1790, 1, 1))]
        repo = VersionedRepository(make_session(results=rows), Subject.service_role(), "buildings")
        with pytest.raises(VersionOverlapError):
            current_versions(repo, IMPORT_DATE)


class TestApplyPlan:
    def test_applies_each_action(self):
        old = make_building("B2", valid_from=date(1776, 1, 1))
        plan = plan_import(
            [
                BuildingCreate(building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE),
                BuildingCreate(building_id="B2", geometry=geojson_polygon(), valid_from=IMPORT_DATE, floors=4),
            ],
            {"B2": old},
        )
        repo = MagicMock(spec=VersionedRepository)

        stats = apply_plan(plan, repo, Layer.BUILDING)

        assert stats.records_inserted == 1
        assert stats.records_superseded == 1
        repo.insert.assert_called_once()
        record_id, changes, effective = repo.supersede.call_args.args
        assert record_id == old.id
        assert changes["floors"] == 4
        assert "valid_from" not in changes
        assert effective == IMPORT_DATE

    def test_errors_are_collected(self):
        plan = plan_import([BuildingCreate(building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE)], {})
        repo = MagicMock(spec=VersionedRepository)
        repo.insert.side_effect = ConstraintViolationError("unique", "duplicate timewalk_id")

        stats = apply_plan(plan, repo, Layer.BUILDING)

        assert stats.records_inserted == 0
        assert stats.validation_errors == ["B1: duplicate timewalk_id"]
        assert stats.success_rate == 0.0

    def test_correction_applied_in_place(self):
        current = make_building("B1", valid_from=IMPORT_DATE, floors=2)
        plan = plan_import(
            [BuildingCreate(building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE, floors=3)],
            {"B1": current},
        )
        repo = VersionedRepository(make_session(get=current), Subject.service_role(), "buildings")

        stats = apply_plan(plan, repo, Layer.BUILDING)

        assert stats.validation_errors == []
        assert stats.records_updated == 1
        assert stats.records_superseded == 0
        assert current.floors == 3
        assert current.valid_from == IMPORT_DATE

    def test_successor_keeps_end_date_and_unset_attributes(self):
        old = make_building(
            "B1", valid_from=date(1700, 1, 1), valid_to=date(1850, 1, 1), architect="Smith", floors=2
        )
        session = make_session(get=old, results=[old])
        repo = VersionedRepository(session, Subject.service_role(), "buildings", enforce_non_overlap=True)
        plan = plan_import(
            [BuildingCreate(building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE, floors=3)],
            {"B1": old},
        )

        stats = apply_plan(plan, repo, Layer.BUILDING)

        assert stats.validation_errors == []
        successor = session.add.call_args.args[0]
        assert (successor.valid_from, successor.valid_to) == (IMPORT_DATE, date(1850, 1, 1))
        assert successor.architect == "Smith"
        assert successor.floors == 3
        assert old.valid_to == IMPORT_DATE


class TestCarriedFields:
    def test_only_fields_the_feature_set(self):
        payload = BuildingCreate(building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE, floors=4)
        carried = carried_fields(payload)
        assert set(carried) == {"building_id", "geometry", "floors", "area_sq_m"}
        assert carried["area_sq_m"] > 0

    def test_explicit_end_date_is_kept(self):
        payload = BuildingCreate(
            building_id="B1", geometry=geojson_polygon(), valid_from=IMPORT_DATE, valid_to=date(1810, 1, 1)
        )
        assert carried_fields(payload)["valid_to"] == date(1810, 1, 1)
