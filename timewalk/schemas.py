"""Pydantic validation schemas for TimeWalk data.

Schema Engineering Philosophy:
- Enumerations are closed sets: anything outside them is rejected here,
  before SQL, and again by the Postgres enum types
- Geometry arrives as GeoJSON in WGS84; it is normalized and measured here
  so that every write path stores the same shapes
- These schemas are the contract between ingestion/editing clients and the
  repository layer; the ORM models mirror them column for column

References:
- Manhattan epochs: 1609 (Lenapehoking at Hudson's arrival), 1660 (New
  Amsterdam, Castello Plan), 1776 (British-occupied New York)
- QGIS project layout: vector/<epoch>/, raster/DEM/, raster/HistoricalMaps/, vector/Masks/
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .spatial import WGS84, measure, normalize_geometry, to_element, to_geojson


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class TimePeriod(str, Enum):
    """The three historical epochs the project reconstructs.

    A coarse classification for data sources and events. Versioned records
    use the continuous valid_from/valid_to window instead.
    """

    LENAPE_1609 = "1609"
    """Mannahatta at the arrival of Henry Hudson."""

    DUTCH_1660 = "1660"
    """New Amsterdam as drawn in the Castello Plan."""

    BRITISH_1776 = "1776"
    """New York at the start of the British occupation."""


class DataType(str, Enum):
    """Storage format of a data source."""

    RASTER = "raster"
    VECTOR = "vector"
    DEM = "dem"
    HISTORICAL_MAP = "historical_map"


class DataCategory(str, Enum):
    """What a data source describes."""

    PARCELS = "parcels"
    BUILDINGS = "buildings"
    BOUNDARIES = "boundaries"
    MASKS = "masks"
    ELEVATION = "elevation"
    HISTORICAL = "historical"


class UserRole(str, Enum):
    """Privilege tier, strictly ordered viewer < editor < admin."""

    VIEWER = "viewer"
    """Reads public data only."""

    EDITOR = "editor"
    """Inserts and corrects records, including records created by others."""

    ADMIN = "admin"
    """Everything editors can do, plus deletes and profile management."""


class MediaType(str, Enum):
    PHOTO = "photo"
    MAP = "map"
    AUDIO = "audio"
    VIDEO = "video"
    GLB = "glb"
    USD = "usd"
    SCAN = "scan"


class MediaRole(str, Enum):
    """How a media asset is used for a building or parcel."""

    REFERENCE = "reference"
    TEXTURE = "texture"
    AMBIENT_AUDIO = "ambient_audio"


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class RecordBase(BaseModel):
    """Common behaviour for every create payload.

    geometry_fields maps a field name to the PostGIS geometry type it must
    have. derived_fields are recomputed from geometry when not supplied.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    geometry_fields: ClassVar[dict[str, str]] = {}
    derived_fields: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def normalize_geometries(cls, data: Any) -> Any:
        """Validate GeoJSON geometries against the column type."""
        if not isinstance(data, dict) or not cls.geometry_fields:
            return data
        data = dict(data)
        for name, expected in cls.geometry_fields.items():
            value = data.get(name)
            if value is not None:
                data[name] = to_geojson(normalize_geometry(value, expected, WGS84))
        return data

    def to_row(self) -> dict[str, Any]:
        """Column values for the ORM model, geometries as WKB elements."""
        row = self.model_dump()
        for name in self.geometry_fields:
            if row.get(name) is not None:
                row[name] = to_element(row[name])
        return row


class VersionedBase(RecordBase):
    """A record valid over the half-open window [valid_from, valid_to)."""

    logical_key: ClassVar[str]

    valid_from: date = Field(description="First day this version describes the world.")

    valid_to: date | None = Field(
        default=None,
        description="First day this version no longer holds (exclusive). Null while current."
    )

    @model_validator(mode="after")
    def validate_window(self) -> "VersionedBase":
        if self.valid_to is not None and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be later than valid_from")
        return self


class MeasuredPolygonMixin(BaseModel):
    """Fills area_sq_m/perimeter_m from the polygon when they are missing."""

    @model_validator(mode="after")
    def fill_measurements(self):
        geometry = getattr(self, "geometry", None)
        if geometry is None:
            return self
        needs_area = "area_sq_m" in type(self).model_fields and self.area_sq_m is None
        needs_perimeter = "perimeter_m" in type(self).model_fields and self.perimeter_m is None
        if needs_area or needs_perimeter:
            measured = measure(geometry)
            if needs_area:
                self.area_sq_m = Decimal(str(round(measured.area_sq_m, 2)))
            if needs_perimeter:
                self.perimeter_m = Decimal(str(round(measured.perimeter_m, 2)))
        return self


# =============================================================================
# PROVENANCE
# =============================================================================


class ProfileCreate(RecordBase):
    """A user profile. The id is issued by the external auth service."""

    id: UUID = Field(description="User id from the hosting platform's auth service.")
    role: UserRole = Field(default=UserRole.VIEWER)
    display_name: str | None = Field(default=None, max_length=255)


class SourceCreate(RecordBase):
    """A citable source: archive record, published map, deed book, etc."""

    title: str = Field(min_length=1, description="Title of the source.")
    citation: str | None = Field(default=None, description="Full bibliographic citation.")
    url: str | None = None
    license: str | None = None
    archive_ref: str | None = Field(
        default=None,
        description="Archive call number or accession reference."
    )


class DataSourceCreate(RecordBase):
    """A dataset in the QGIS project (one shapefile folder or raster set)."""

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    time_period: TimePeriod
    data_type: DataType
    data_category: DataCategory
    file_path: str | None = Field(
        default=None,
        max_length=500,
        description="Path relative to the QGIS project root.",
        examples=["vector/1776/", "raster/DEM/"]
    )
    coordinate_system: str = Field(
        default="EPSG:3857",
        max_length=50,
        description="Projection the dataset was authored in. Stored geometry is always EPSG:4326."
    )
    source_id: UUID | None = None

    @field_validator("coordinate_system")
    @classmethod
    def normalize_crs(cls, v: str) -> str:
        return v.upper()


# =============================================================================
# VERSIONED GEOGRAPHIC ENTITIES
# =============================================================================


class BuildingParcelCreate(MeasuredPolygonMixin, VersionedBase):
    """A historical lot polygon."""

    geometry_fields: ClassVar[dict[str, str]] = {"geometry": "POLYGON"}
    derived_fields: ClassVar[tuple[str, ...]] = ("area_sq_m", "perimeter_m")
    logical_key: ClassVar[str] = "parcel_id"

    source_id: UUID | None = None
    parcel_id: str | None = Field(
        default=None,
        max_length=100,
        description="Identifier shared by every version of the same lot."
    )
    geometry: dict[str, Any] = Field(description="GeoJSON Polygon in EPSG:4326.")
    area_sq_m: Decimal | None = Field(default=None, ge=0)
    perimeter_m: Decimal | None = Field(default=None, ge=0)
    lot_number: str | None = Field(default=None, max_length=50)
    block_number: str | None = Field(default=None, max_length=50)
    street_address: str | None = Field(default=None, max_length=255)
    owner_name: str | None = Field(default=None, max_length=255)
    building_type: str | None = Field(default=None, max_length=100)
    construction_year: int | None = None
    source_confidence: Decimal | None = Field(
        default=None,
        ge=0,
        le=1,
        description="Fraction in [0, 1]: how sure the digitizer is about this version."
    )


class BuildingCreate(MeasuredPolygonMixin, VersionedBase):
    """A building footprint."""

    geometry_fields: ClassVar[dict[str, str]] = {"geometry": "POLYGON"}
    derived_fields: ClassVar[tuple[str, ...]] = ("area_sq_m",)
    logical_key: ClassVar[str] = "building_id"

    source_id: UUID | None = None
    building_id: str | None = Field(
        default=None,
        max_length=100,
        description="Identifier shared by every version of the same building."
    )
    timewalk_id: str | None = Field(
        default=None,
        max_length=100,
        description="Unique key of the matching object in the 3D scene (e.g., TW_BLDG_001).",
        examples=["TW_BLDG_001"]
    )
    name: str | None = None
    geometry: dict[str, Any] = Field(description="GeoJSON Polygon in EPSG:4326.")
    area_sq_m: Decimal | None = Field(default=None, ge=0)
    height_m: Decimal | None = Field(default=None, ge=0)
    floors: int | None = Field(default=None, ge=0)
    building_type: str | None = Field(default=None, max_length=100)
    style: str | None = Field(default=None, max_length=100)
    construction_year: int | None = None
    demolition_year: int | None = None
    owner_name: str | None = Field(default=None, max_length=255)
    owner_type: str | None = Field(
        default=None,
        max_length=100,
        description="individual, corporation, government, religious, etc."
    )
    architect: str | None = Field(default=None, max_length=255)
    architect_firm: str | None = Field(default=None, max_length=255)
    roof_type: str | None = Field(default=None, max_length=50)
    material: str | None = Field(default=None, max_length=100)
    source_confidence: Decimal | None = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def validate_lifespan(self) -> "BuildingCreate":
        if (
            self.construction_year is not None
            and self.demolition_year is not None
            and self.demolition_year < self.construction_year
        ):
            raise ValueError("demolition_year cannot precede construction_year")
        return self


class BoundaryCreate(VersionedBase):
    """An administrative or geographic boundary (wards, shoreline, masks)."""

    geometry_fields: ClassVar[dict[str, str]] = {"geometry": "POLYGON"}
    logical_key: ClassVar[str] = "boundary_id"

    source_id: UUID | None = None
    boundary_id: str | None = Field(default=None, max_length=100)
    geometry: dict[str, Any] = Field(description="GeoJSON Polygon in EPSG:4326.")
    boundary_type: str | None = Field(default=None, max_length=100)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None


class StreetCreate(VersionedBase):
    """A street centreline. Streets are versioned by name."""

    geometry_fields: ClassVar[dict[str, str]] = {"geometry": "MULTILINESTRING"}
    logical_key: ClassVar[str] = "name"

    name: str | None = None
    geometry: dict[str, Any] = Field(description="GeoJSON (Multi)LineString in EPSG:4326.")
    street_class: str | None = Field(default=None, max_length=100)


class RasterDataCreate(VersionedBase):
    """Metadata for a raster file; pixels live in object storage."""

    geometry_fields: ClassVar[dict[str, str]] = {"bounds": "POLYGON"}
    logical_key: ClassVar[str] = "raster_id"

    source_id: UUID | None = None
    raster_id: str | None = Field(default=None, max_length=100)
    file_path: str = Field(min_length=1, max_length=500)
    raster_type: str | None = Field(
        default=None,
        max_length=100,
        description="dem, historical_map, satellite, etc."
    )
    resolution_m: Decimal | None = Field(default=None, gt=0)
    pixel_size_x: Decimal | None = None
    pixel_size_y: Decimal | None = None
    bounds: dict[str, Any] | None = Field(default=None, description="GeoJSON Polygon footprint.")


# =============================================================================
# EVENTS, MEDIA, NOTES
# =============================================================================


class HistoricalEventCreate(RecordBase):
    geometry_fields: ClassVar[dict[str, str]] = {"location": "POINT"}

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    event_date: date | None = None
    time_period: TimePeriod
    location: dict[str, Any] | None = Field(default=None, description="GeoJSON Point.")
    significance: str | None = None
    source_id: UUID | None = None


class MediaAssetCreate(RecordBase):
    """A photo, scan, model or recording held in object storage."""

    geometry_fields: ClassVar[dict[str, str]] = {"capture_geom": "POINT"}

    kind: MediaType
    storage_path: str = Field(
        min_length=1,
        description="Path within the storage bucket; upload happens elsewhere."
    )
    license: str | None = None
    creator: str | None = None
    capture_time: datetime | None = None
    capture_geom: dict[str, Any] | None = Field(default=None, description="Where it was captured.")
    file_size_bytes: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class BuildingMediaCreate(RecordBase):
    building_id: UUID
    media_id: UUID
    role: MediaRole


class ParcelMediaCreate(RecordBase):
    parcel_id: UUID
    media_id: UUID
    role: MediaRole


class BuildingNoteCreate(RecordBase):
    """A timestamped research note about a building."""

    building_id: UUID
    source_id: UUID | None = Field(default=None, description="Optional source document.")
    researcher_name: str = Field(min_length=1, max_length=255)
    note_text: str = Field(min_length=1)
    note_type: str | None = Field(
        default=None,
        max_length=100,
        examples=["research", "correction", "question", "confirmation"]
    )
    confidence_level: str | None = Field(
        default=None,
        max_length=50,
        examples=["high", "medium", "low", "speculative"]
    )


# =============================================================================
# API REQUESTS
# =============================================================================


class SupersedeRequest(BaseModel):
    """Replace a version from a given day onward."""

    effective: date = Field(
        description="First day of the new version. The old version's valid_to is set to this day."
    )
    changes: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields that differ from the version being replaced."
    )


SCHEMAS_BY_TABLE: dict[str, type[RecordBase]] = {
    "profiles": ProfileCreate,
    "sources": SourceCreate,
    "data_sources": DataSourceCreate,
    "building_parcels": BuildingParcelCreate,
    "buildings": BuildingCreate,
    "boundaries": BoundaryCreate,
    "streets": StreetCreate,
    "raster_data": RasterDataCreate,
    "historical_events": HistoricalEventCreate,
    "media_assets": MediaAssetCreate,
    "building_media": BuildingMediaCreate,
    "parcel_media": ParcelMediaCreate,
    "building_notes": BuildingNoteCreate,
}
