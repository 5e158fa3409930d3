"""SQLAlchemy models for the TimeWalk historical GIS schema.

Data Architecture Overview:
- Versioned entities (parcels, buildings, boundaries, streets, rasters) carry a
  half-open validity window [valid_from, valid_to). When the world changes,
  the prior version is closed and a new one appended; rows are never
  overwritten to represent a later state
- Provenance chain: record -> data_sources -> sources
- Every geometry is stored in EPSG:4326 with a GiST index (GeoAlchemy2
  creates idx_<table>_<column> for each Geometry column)

Key Concepts:
- Logical key: the column naming one real-world object across its versions
  (parcel_id, building_id, boundary_id, raster_id, street name)
- time_period: the coarse epoch (1609 / 1660 / 1776) of a data source or
  event, distinct from the continuous validity window

References:
- See timewalk/ddl.py for views, triggers and row-level security
- See timewalk/schemas.py for the Pydantic validation models
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar

from geoalchemy2 import Geometry
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from .database import Base
from .schemas import (
    DataCategory,
    DataType,
    MediaRole,
    MediaType,
    TimePeriod,
    UserRole,
)


def pg_enum(enum_cls, name: str) -> SQLEnum:
    """Postgres enum type storing the member values ('viewer', '1776', ...)."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


# Shared by more than one table
TIME_PERIOD = pg_enum(TimePeriod, "time_period")
MEDIA_ROLE = pg_enum(MediaRole, "media_role")


def confidence_check(table: str) -> CheckConstraint:
    return CheckConstraint(
        "source_confidence >= 0 AND source_confidence <= 1",
        name=f"ck_{table}_source_confidence",
    )


def window_check(table: str) -> CheckConstraint:
    return CheckConstraint(
        "valid_to IS NULL OR valid_to > valid_from",
        name=f"ck_{table}_valid_window",
    )


# =============================================================================
# MIXINS
# =============================================================================


class TimestampMixin:
    """created_at/updated_at, stamped by timewalk.audit and the DB trigger."""

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class AuthoredMixin:
    @declared_attr
    def created_by(cls) -> Mapped[uuid.UUID | None]:
        return mapped_column(UUID(as_uuid=True), ForeignKey("profiles.id"))


class VersionedMixin:
    """Half-open validity window. See timewalk.temporal."""

    __logical_key__: ClassVar[str]
    __geometry_column__: ClassVar[str] = "geometry"

    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(
        Date, doc="Exclusive end of validity; null while the version is current"
    )


# =============================================================================
# USERS AND PROVENANCE
# =============================================================================


class Profile(TimestampMixin, Base):
    """A user of the editing tools, keyed by the external auth user id.

    On the hosted platform timewalk.ddl adds the foreign key to auth.users
    (ON DELETE CASCADE); the schema never stores credentials.
    """

    __tablename__ = "profiles"
    __table_args__ = {"comment": "User profiles extending the hosted auth users with roles"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    role: Mapped[UserRole] = mapped_column(
        pg_enum(UserRole, "user_role"),
        nullable=False,
        default=UserRole.VIEWER,
        server_default=UserRole.VIEWER.value,
    )
    display_name: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<Profile {self.id} ({self.role})>"


class Source(TimestampMixin, Base):
    """Attribution and provenance for historical data."""

    __tablename__ = "sources"
    __table_args__ = {"comment": "Attribution and provenance for historical data"}

    id: Mapped[uuid.UUID] = uuid_pk()
    title: Mapped[str] = mapped_column(Text, nullable=False)
    citation: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str | None] = mapped_column(Text)
    license: Mapped[str | None] = mapped_column(Text)
    archive_ref: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<Source {self.title}>"


class DataSource(TimestampMixin, Base):
    """A dataset from the QGIS project."""

    __tablename__ = "data_sources"
    __table_args__ = {"comment": "Metadata about data sources from QGIS project"}

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    time_period: Mapped[TimePeriod] = mapped_column(TIME_PERIOD, nullable=False)
    data_type: Mapped[DataType] = mapped_column(pg_enum(DataType, "data_type"), nullable=False)
    data_category: Mapped[DataCategory] = mapped_column(
        pg_enum(DataCategory, "data_category"), nullable=False
    )
    file_path: Mapped[str | None] = mapped_column(String(500))
    coordinate_system: Mapped[str | None] = mapped_column(
        String(50),
        default="EPSG:3857",
        server_default="EPSG:3857",
        doc="Projection of the source files; stored geometry is always EPSG:4326",
    )
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("sources.id"))

    source: Mapped["Source | None"] = relationship("Source")

    def __repr__(self) -> str:
        return f"<DataSource {self.name} ({self.time_period})>"


# =============================================================================
# VERSIONED GEOGRAPHIC ENTITIES
# =============================================================================


class BuildingParcel(VersionedMixin, AuthoredMixin, TimestampMixin, Base):
    """A historical lot polygon."""

    __tablename__ = "building_parcels"
    __logical_key__ = "parcel_id"
    __table_args__ = (
        confidence_check("building_parcels"),
        window_check("building_parcels"),
        Index("idx_building_parcels_source_id", "source_id"),
        Index("idx_building_parcels_valid_from", "valid_from"),
        Index("idx_building_parcels_valid_to", "valid_to"),
        {"comment": "Historical building parcel polygons with temporal versioning"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("data_sources.id"))
    parcel_id: Mapped[str | None] = mapped_column(String(100))
    geometry: Mapped[str] = mapped_column(
        Geometry("POLYGON", srid=4326),
        nullable=False,
        comment="Polygon geometry in EPSG:4326 (WGS84)",
    )
    area_sq_m: Mapped[Decimal | None] = mapped_column(Numeric)
    perimeter_m: Mapped[Decimal | None] = mapped_column(Numeric)

    # Attributes carried over from the shapefiles
    lot_number: Mapped[str | None] = mapped_column(String(50))
    block_number: Mapped[str | None] = mapped_column(String(50))
    street_address: Mapped[str | None] = mapped_column(String(255))
    owner_name: Mapped[str | None] = mapped_column(String(255))
    building_type: Mapped[str | None] = mapped_column(String(100))
    construction_year: Mapped[int | None] = mapped_column(Integer)

    source_confidence: Mapped[Decimal | None] = mapped_column(Numeric)

    data_source: Mapped["DataSource | None"] = relationship("DataSource")
    media_links: Mapped[list["ParcelMedia"]] = relationship(
        "ParcelMedia", back_populates="parcel", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<BuildingParcel {self.parcel_id} [{self.valid_from}, {self.valid_to})>"


class Building(VersionedMixin, AuthoredMixin, TimestampMixin, Base):
    """A building footprint with ownership and design attributes."""

    __tablename__ = "buildings"
    __logical_key__ = "building_id"
    __table_args__ = (
        confidence_check("buildings"),
        window_check("buildings"),
        Index("idx_buildings_source_id", "source_id"),
        Index("idx_buildings_construction_year", "construction_year"),
        Index("idx_buildings_valid_from", "valid_from"),
        Index("idx_buildings_valid_to", "valid_to"),
        Index("idx_buildings_owner_name", "owner_name"),
        Index("idx_buildings_architect", "architect"),
        Index("idx_buildings_timewalk_id", "timewalk_id"),
        {"comment": "Individual building geometries with temporal versioning"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("data_sources.id"))
    building_id: Mapped[str | None] = mapped_column(String(100))
    timewalk_id: Mapped[str | None] = mapped_column(
        String(100),
        unique=True,
        comment="Unique identifier linking to Unreal Engine objects (e.g., TW_BLDG_001)",
    )
    name: Mapped[str | None] = mapped_column(Text)
    geometry: Mapped[str] = mapped_column(
        Geometry("POLYGON", srid=4326),
        nullable=False,
        comment="Building polygon geometry in EPSG:4326",
    )
    area_sq_m: Mapped[Decimal | None] = mapped_column(Numeric)
    height_m: Mapped[Decimal | None] = mapped_column(Numeric)
    floors: Mapped[int | None] = mapped_column(Integer)
    building_type: Mapped[str | None] = mapped_column(String(100))
    style: Mapped[str | None] = mapped_column(String(100))
    construction_year: Mapped[int | None] = mapped_column(Integer)
    demolition_year: Mapped[int | None] = mapped_column(Integer)

    # Ownership and design
    owner_name: Mapped[str | None] = mapped_column(
        String(255), comment="Name of building owner (individual or organization)"
    )
    owner_type: Mapped[str | None] = mapped_column(
        String(100), comment="Type of owner: individual, corporation, government, religious, etc."
    )
    architect: Mapped[str | None] = mapped_column(String(255), comment="Name of primary architect")
    architect_firm: Mapped[str | None] = mapped_column(String(255), comment="Name of architectural firm")

    roof_type: Mapped[str | None] = mapped_column(String(50))
    material: Mapped[str | None] = mapped_column(String(100))

    source_confidence: Mapped[Decimal | None] = mapped_column(Numeric)

    data_source: Mapped["DataSource | None"] = relationship("DataSource")
    notes: Mapped[list["BuildingNote"]] = relationship(
        "BuildingNote", back_populates="building", passive_deletes=True
    )
    media_links: Mapped[list["BuildingMedia"]] = relationship(
        "BuildingMedia", back_populates="building", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Building {self.building_id or self.timewalk_id} [{self.valid_from}, {self.valid_to})>"


class Boundary(VersionedMixin, AuthoredMixin, TimestampMixin, Base):
    """Administrative and geographic boundaries."""

    __tablename__ = "boundaries"
    __logical_key__ = "boundary_id"
    __table_args__ = (
        window_check("boundaries"),
        Index("idx_boundaries_source_id", "source_id"),
        Index("idx_boundaries_valid_from", "valid_from"),
        {"comment": "Administrative and geographic boundaries"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("data_sources.id"))
    boundary_id: Mapped[str | None] = mapped_column(String(100))
    geometry: Mapped[str] = mapped_column(
        Geometry("POLYGON", srid=4326),
        nullable=False,
        comment="Boundary polygon geometry in EPSG:4326",
    )
    boundary_type: Mapped[str | None] = mapped_column(String(100))
    name: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)

    data_source: Mapped["DataSource | None"] = relationship("DataSource")

    def __repr__(self) -> str:
        return f"<Boundary {self.boundary_id or self.name} [{self.valid_from}, {self.valid_to})>"


class Street(VersionedMixin, AuthoredMixin, TimestampMixin, Base):
    """Street centrelines, versioned by name."""

    __tablename__ = "streets"
    __logical_key__ = "name"
    __table_args__ = (
        window_check("streets"),
        Index("idx_streets_valid_from", "valid_from"),
        {"comment": "Street geometries with temporal versioning"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str | None] = mapped_column(Text)
    geometry: Mapped[str] = mapped_column(
        Geometry("MULTILINESTRING", srid=4326),
        nullable=False,
        comment="Street line geometry in EPSG:4326",
    )
    street_class: Mapped[str | None] = mapped_column(String(100))

    def __repr__(self) -> str:
        return f"<Street {self.name} [{self.valid_from}, {self.valid_to})>"


class RasterData(VersionedMixin, AuthoredMixin, TimestampMixin, Base):
    """Metadata for raster files (DEMs, scanned maps); pixels stay in storage."""

    __tablename__ = "raster_data"
    __logical_key__ = "raster_id"
    __geometry_column__ = "bounds"
    __table_args__ = (
        window_check("raster_data"),
        Index("idx_raster_data_source_id", "source_id"),
        Index("idx_raster_data_valid_from", "valid_from"),
        {"comment": "Metadata for raster files (DEMs, maps, etc.)"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("data_sources.id"))
    raster_id: Mapped[str | None] = mapped_column(String(100))
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    raster_type: Mapped[str | None] = mapped_column(String(100))
    resolution_m: Mapped[Decimal | None] = mapped_column(Numeric)
    pixel_size_x: Mapped[Decimal | None] = mapped_column(Numeric)
    pixel_size_y: Mapped[Decimal | None] = mapped_column(Numeric)
    bounds: Mapped[str | None] = mapped_column(Geometry("POLYGON", srid=4326))

    data_source: Mapped["DataSource | None"] = relationship("DataSource")

    def __repr__(self) -> str:
        return f"<RasterData {self.raster_id or self.file_path} [{self.valid_from}, {self.valid_to})>"


# =============================================================================
# EVENTS
# =============================================================================


class HistoricalEvent(AuthoredMixin, TimestampMixin, Base):
    """A dated event with a point location, classified by epoch."""

    __tablename__ = "historical_events"
    __table_args__ = (
        Index("idx_historical_events_time_period", "time_period"),
        Index("idx_historical_events_event_date", "event_date"),
        {"comment": "Temporal events and their locations"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    event_date: Mapped[date | None] = mapped_column(Date)
    time_period: Mapped[TimePeriod] = mapped_column(TIME_PERIOD, nullable=False)
    location: Mapped[str | None] = mapped_column(
        Geometry("POINT", srid=4326),
        comment="Point location of historical event in EPSG:4326",
    )
    significance: Mapped[str | None] = mapped_column(Text)
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("sources.id"))

    source: Mapped["Source | None"] = relationship("Source")

    def __repr__(self) -> str:
        return f"<HistoricalEvent {self.name} ({self.time_period})>"


# =============================================================================
# MEDIA AND RESEARCH NOTES
# =============================================================================


class MediaAsset(AuthoredMixin, TimestampMixin, Base):
    """A file in object storage, referenced by path."""

    __tablename__ = "media_assets"
    __table_args__ = (
        Index("idx_media_assets_kind", "kind"),
        {"comment": "Media files stored in object storage with metadata"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    kind: Mapped[MediaType] = mapped_column(pg_enum(MediaType, "media_type"), nullable=False)
    storage_path: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Path to file in the storage bucket"
    )
    license: Mapped[str | None] = mapped_column(Text)
    creator: Mapped[str | None] = mapped_column(Text)
    capture_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    capture_geom: Mapped[str | None] = mapped_column(
        Geometry("POINT", srid=4326), comment="Location where media was captured"
    )
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    mime_type: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<MediaAsset {self.kind} {self.storage_path}>"


class BuildingMedia(Base):
    """Links between buildings and media assets."""

    __tablename__ = "building_media"
    __table_args__ = {"comment": "Links between buildings and media assets"}

    building_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("buildings.id", ondelete="CASCADE"), primary_key=True
    )
    media_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("media_assets.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[MediaRole] = mapped_column(MEDIA_ROLE, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    building: Mapped["Building"] = relationship("Building", back_populates="media_links")
    media: Mapped["MediaAsset"] = relationship("MediaAsset")

    def __repr__(self) -> str:
        return f"<BuildingMedia {self.building_id} -> {self.media_id} ({self.role})>"


class ParcelMedia(Base):
    """Links between parcels and media assets."""

    __tablename__ = "parcel_media"
    __table_args__ = {"comment": "Links between parcels and media assets"}

    parcel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("building_parcels.id", ondelete="CASCADE"), primary_key=True
    )
    media_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("media_assets.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[MediaRole] = mapped_column(MEDIA_ROLE, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    parcel: Mapped["BuildingParcel"] = relationship("BuildingParcel", back_populates="media_links")
    media: Mapped["MediaAsset"] = relationship("MediaAsset")

    def __repr__(self) -> str:
        return f"<ParcelMedia {self.parcel_id} -> {self.media_id} ({self.role})>"


class BuildingNote(AuthoredMixin, TimestampMixin, Base):
    """Timestamped research notes and feedback for buildings."""

    __tablename__ = "building_notes"
    __table_args__ = (
        Index("idx_building_notes_building_id", "building_id"),
        Index("idx_building_notes_source_id", "source_id"),
        Index("idx_building_notes_researcher_name", "researcher_name"),
        Index("idx_building_notes_created_at", "created_at"),
        {"comment": "Timestamped research notes and feedback for buildings"},
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    building_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("buildings.id", ondelete="CASCADE")
    )
    source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("sources.id"))
    researcher_name: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Name of researcher who added the note"
    )
    note_text: Mapped[str] = mapped_column(
        Text, nullable=False, comment="The actual research note or feedback text"
    )
    note_type: Mapped[str | None] = mapped_column(
        String(100), comment="Type of note: research, correction, question, confirmation, etc."
    )
    confidence_level: Mapped[str | None] = mapped_column(
        String(50), comment="Confidence level: high, medium, low, speculative"
    )

    building: Mapped["Building | None"] = relationship("Building", back_populates="notes")

    def __repr__(self) -> str:
        return f"<BuildingNote {self.researcher_name} on {self.building_id}>"


VERSIONED_MODELS: tuple[type, ...] = (BuildingParcel, Building, Boundary, Street, RasterData)

MODELS_BY_TABLE: dict[str, type] = {
    model.__tablename__: model
    for model in (
        Profile,
        Source,
        DataSource,
        BuildingParcel,
        Building,
        Boundary,
        Street,
        RasterData,
        HistoricalEvent,
        MediaAsset,
        BuildingMedia,
        ParcelMedia,
        BuildingNote,
    )
}
