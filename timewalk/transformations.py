"""QGIS GeoJSON export -> versioned records.

A dataset arrives as a FeatureCollection exported from one QGIS layer, in
the projection recorded on its data_sources row. Each feature is:

1. mapped from shapefile attribute names (10-character, upper case) to
   schema fields
2. reprojected to EPSG:4326, validated and measured by the create schema
3. matched by logical key against the versions valid on the import date:
   - no current version       -> insert
   - attributes/shape differ  -> supersede at the import date
   - identical                -> skip

Schema Engineering Philosophy:
- A plan is computed before anything is written, so --dry-run shows exactly
  what an import would do
- Bad features are reported, not fatal; overlapping current versions are
  fatal because the plan could not say which one to supersede
"""

from collections.abc import Iterable, Mapping
from datetime import date
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError

from .policy import ResourceKind
from .repository import ConstraintViolationError, VersionedRepository
from .schemas import SCHEMAS_BY_TABLE, VersionedBase
from .spatial import WGS84, GeometryError, normalize_geometry, to_geojson, to_shape
from .temporal import ValidityError, VersionOverlapError


# =============================================================================
# Layers
# =============================================================================


class Layer(str, Enum):
    PARCEL = "parcel"
    BUILDING = "building"
    BOUNDARY = "boundary"
    STREET = "street"


LAYER_KINDS: dict[Layer, ResourceKind] = {
    Layer.PARCEL: ResourceKind.BUILDING_PARCELS,
    Layer.BUILDING: ResourceKind.BUILDINGS,
    Layer.BOUNDARY: ResourceKind.BOUNDARIES,
    Layer.STREET: ResourceKind.STREETS,
}


def layer_schema(layer: Layer) -> type[VersionedBase]:
    return SCHEMAS_BY_TABLE[LAYER_KINDS[Layer(layer)].value]


# =============================================================================
# Attribute Name Normalization
# =============================================================================

# Shapefile attribute names seen in the project's layers, by layer
FIELD_ALIASES: dict[Layer, dict[str, str]] = {
    Layer.PARCEL: {
        "PARCEL_ID": "parcel_id", "PARCELID": "parcel_id", "PID": "parcel_id",
        "LOT": "lot_number", "LOT_NO": "lot_number", "LOT_NUM": "lot_number",
        "BLOCK": "block_number", "BLOCK_NO": "block_number", "BLOCK_NUM": "block_number",
        "ADDRESS": "street_address", "ADDR": "street_address", "STREET_ADD": "street_address",
        "OWNER": "owner_name", "OWNER_NAME": "owner_name", "OWNERNAME": "owner_name",
        "BLDG_TYPE": "building_type", "BLDGTYPE": "building_type", "USE": "building_type",
        "YEAR_BUILT": "construction_year", "YR_BUILT": "construction_year", "BUILT": "construction_year",
        "CONF": "source_confidence", "CONFIDENCE": "source_confidence",
    },
    Layer.BUILDING: {
        "BLDG_ID": "building_id", "BUILDING_I": "building_id", "BUILDINGID": "building_id",
        "TW_ID": "timewalk_id", "TIMEWALK_I": "timewalk_id", "TIMEWALKID": "timewalk_id",
        "NAME": "name", "BLDG_NAME": "name",
        "HEIGHT": "height_m", "HEIGHT_M": "height_m",
        "FLOORS": "floors", "STORIES": "floors", "STOREYS": "floors",
        "BLDG_TYPE": "building_type", "BLDGTYPE": "building_type", "TYPE": "building_type",
        "STYLE": "style",
        "YEAR_BUILT": "construction_year", "YR_BUILT": "construction_year", "BUILT": "construction_year",
        "DEMOLISHED": "demolition_year", "YR_DEMO": "demolition_year", "DEMO_YEAR": "demolition_year",
        "OWNER": "owner_name", "OWNER_NAME": "owner_name", "OWNER_TYPE": "owner_type",
        "ARCHITECT": "architect", "ARCH_FIRM": "architect_firm", "ARCHITECT_": "architect_firm",
        "ROOF": "roof_type", "ROOF_TYPE": "roof_type",
        "MATERIAL": "material", "MATERIALS": "material",
        "CONF": "source_confidence", "CONFIDENCE": "source_confidence",
    },
    Layer.BOUNDARY: {
        "BOUND_ID": "boundary_id", "BOUNDARY_I": "boundary_id", "BNDRY_ID": "boundary_id",
        "TYPE": "boundary_type", "BOUND_TYPE": "boundary_type", "BNDRY_TYPE": "boundary_type",
        "NAME": "name", "DESC": "description", "DESCRIPTIO": "description",
    },
    Layer.STREET: {
        "NAME": "name", "ST_NAME": "name", "STREET": "name", "STREETNAME": "name",
        "CLASS": "street_class", "ST_CLASS": "street_class", "TYPE": "street_class",
    },
}

# Accepted on every layer
WINDOW_ALIASES = {
    "VALID_FROM": "valid_from", "VALIDFROM": "valid_from",
    "VALID_TO": "valid_to", "VALIDTO": "valid_to",
}

# Attributes QGIS adds that never map to a column
IGNORED_ATTRIBUTES = {"FID", "OBJECTID", "ID", "SHAPE_LENG", "SHAPE_AREA", "SHAPE_LEN"}


def clean_value(value: Any) -> Any:
    """Shapefiles encode missing values as empty strings or whitespace."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def normalize_properties(properties: Mapping[str, Any], layer: Layer) -> tuple[dict[str, Any], list[str]]:
    """Map feature attributes to schema fields. Returns (fields, unmapped attribute names)."""
    layer = Layer(layer)
    aliases = {**FIELD_ALIASES[layer], **WINDOW_ALIASES}
    fields = layer_schema(layer).model_fields

    mapped: dict[str, Any] = {}
    unmapped: list[str] = []
    for name, value in properties.items():
        upper = name.strip().upper()
        if upper in IGNORED_ATTRIBUTES:
            continue
        target = aliases.get(upper) or (name.lower() if name.lower() in fields else None)
        if target is None:
            unmapped.append(name)
            continue
        value = clean_value(value)
        if value is not None:
            mapped.setdefault(target, value)
    return mapped, unmapped


# =============================================================================
# Feature Parsing
# =============================================================================


def parse_feature(
    feature: Mapping[str, Any],
    layer: Layer,
    valid_from: date,
    source_id: UUID | None = None,
    crs: str = WGS84,
) -> VersionedBase:
    """One GeoJSON feature -> validated create payload.

    Raises GeometryError or pydantic.ValidationError.
    """
    schema = layer_schema(layer)
    geometry_field = next(iter(schema.geometry_fields))
    expected = schema.geometry_fields[geometry_field]

    if feature.get("geometry") is None:
        raise GeometryError("Feature has no geometry")
    geometry = normalize_geometry(feature["geometry"], expected, crs)

    payload, _ = normalize_properties(feature.get("properties") or {}, layer)
    payload[geometry_field] = to_geojson(geometry)
    payload.setdefault("valid_from", valid_from)
    if source_id is not None and "source_id" in schema.model_fields:
        payload["source_id"] = source_id
    return schema.model_validate(payload)


class ParsedCollection(BaseModel):
    """Features that validated, and why the others did not."""

    payloads: list[VersionedBase] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    unmapped_attributes: list[str] = Field(
        default_factory=list,
        description="Attribute names with no matching column, across all features"
    )


def parse_collection(
    collection: Mapping[str, Any],
    layer: Layer,
    valid_from: date,
    source_id: UUID | None = None,
    crs: str = WGS84,
) -> ParsedCollection:
    if collection.get("type") != "FeatureCollection":
        raise GeometryError("Expected a GeoJSON FeatureCollection")

    parsed = ParsedCollection()
    unmapped: set[str] = set()
    for index, feature in enumerate(collection.get("features") or []):
        _, skipped = normalize_properties(feature.get("properties") or {}, layer)
        unmapped.update(skipped)
        try:
            parsed.payloads.append(parse_feature(feature, layer, valid_from, source_id, crs))
        except (GeometryError, ValidationError) as e:
            parsed.errors.append(f"feature {index}: {e}")
    parsed.unmapped_attributes = sorted(unmapped)
    return parsed


# =============================================================================
# Import Planning
# =============================================================================


class ImportAction(str, Enum):
    INSERT = "insert"
    SUPERSEDE = "supersede"
    UPDATE = "update"
    """Correction to a version that starts on the import date."""
    SKIP = "skip"


class PlannedChange(BaseModel):
    action: ImportAction
    key: str | None = Field(description="Logical key of the object, if the feature has one")
    payload: VersionedBase
    current_id: UUID | None = Field(default=None, description="Version to supersede or correct")
    changed_fields: list[str] = Field(default_factory=list)


class ImportPlan(BaseModel):
    changes: list[PlannedChange] = Field(default_factory=list)
    duplicate_keys: list[str] = Field(
        default_factory=list,
        description="Keys appearing on more than one feature; only the first is planned"
    )

    def count(self, action: ImportAction) -> int:
        return sum(1 for change in self.changes if change.action is action)


# Never compared: provenance and window move with every import
UNCOMPARED_FIELDS = {"valid_from", "valid_to", "source_id"}


def changed_fields(payload: VersionedBase, record: Any) -> list[str]:
    """Fields the feature sets whose values differ from the stored version."""
    skip = UNCOMPARED_FIELDS | set(payload.derived_fields)
    changed = []
    for name in sorted(payload.model_fields_set - skip):
        new, old = getattr(payload, name), getattr(record, name, None)
        if name in payload.geometry_fields:
            if old is None or new is None:
                differs = old is not new
            else:
                differs = not to_shape(new).equals_exact(to_shape(old), 1e-9)
        else:
            differs = new != old
        if differs:
            changed.append(name)
    return changed


def plan_import(
    payloads: Iterable[VersionedBase],
    current_by_key: Mapping[str, Any],
) -> ImportPlan:
    """Decide insert / supersede / update / skip for each payload.

    A changed feature supersedes the current version, unless that version
    already starts on the import date: then it is corrected in place.
    """
    plan = ImportPlan()
    seen: set[str] = set()
    for payload in payloads:
        key = getattr(payload, payload.logical_key)
        if key is not None:
            if key in seen:
                if key not in plan.duplicate_keys:
                    plan.duplicate_keys.append(key)
                continue
            seen.add(key)

        current = current_by_key.get(key) if key is not None else None
        if current is None:
            plan.changes.append(PlannedChange(action=ImportAction.INSERT, key=key, payload=payload))
            continue

        diff = changed_fields(payload, current)
        if not diff:
            action = ImportAction.SKIP
        elif current.valid_from == payload.valid_from:
            action = ImportAction.UPDATE
        else:
            action = ImportAction.SUPERSEDE
        plan.changes.append(
            PlannedChange(
                action=action,
                key=key,
                payload=payload,
                current_id=current.id,
                changed_fields=diff,
            )
        )
    return plan


def current_versions(repo: VersionedRepository, as_of: date) -> dict[str, Any]:
    """Versions valid on `as_of`, by logical key. Refuses ambiguous data."""
    resolution = repo.current(as_of)
    if resolution.anomalies:
        key, rows = next(iter(resolution.anomalies.items()))
        raise VersionOverlapError(key, rows)
    key_name = repo.model.__logical_key__
    return {
        getattr(record, key_name): record
        for record in resolution.records
        if getattr(record, key_name) is not None
    }


# =============================================================================
# Applying a Plan
# =============================================================================


class TransformationStats(BaseModel):
    """Statistics from one import run."""

    source: str = Field(description="Layer name")
    records_processed: int = 0
    records_inserted: int = 0
    records_superseded: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    validation_errors: list[str] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.records_processed == 0:
            return 0.0
        return (self.records_processed - len(self.validation_errors)) / self.records_processed


def carried_fields(payload: VersionedBase) -> dict[str, Any]:
    """Values the feature actually carried, plus measurements of its geometry.

    Attributes the feature left out keep their stored values, and the
    successor keeps the old end date unless the feature sets one.
    """
    names = set(payload.model_fields_set) - {"valid_from"}
    if names & set(payload.geometry_fields):
        names |= set(payload.derived_fields)
    return payload.model_dump(include=names)


def apply_plan(plan: ImportPlan, repo: VersionedRepository, layer: Layer) -> TransformationStats:
    """Write the plan; each change commits on its own so one bad feature does not sink the rest."""
    stats = TransformationStats(source=Layer(layer).value)
    for change in plan.changes:
        stats.records_processed += 1
        try:
            if change.action is ImportAction.INSERT:
                repo.insert(change.payload)
                stats.records_inserted += 1
            elif change.action is ImportAction.SUPERSEDE:
                repo.supersede(change.current_id, carried_fields(change.payload), change.payload.valid_from)
                stats.records_superseded += 1
            elif change.action is ImportAction.UPDATE:
                repo.update(change.current_id, carried_fields(change.payload))
                stats.records_updated += 1
            else:
                stats.records_skipped += 1
        except (ConstraintViolationError, ValidityError, VersionOverlapError, ValidationError) as e:
            stats.validation_errors.append(f"{change.key or 'unkeyed feature'}: {e}")
    return stats
