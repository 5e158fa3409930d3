"""Geometry helpers for versioned GIS records.

Storage convention: every geometry column is EPSG:4326 (WGS84 lon/lat) with a
GiST index. The source projection of a dataset is recorded on its
data_sources row (coordinate_system) and is only used at ingestion time to
bring coordinates into WGS84.

Two ways to answer "what is here":
- In the database: intersects() / within() / within_distance() / bbox_filter()
  build PostGIS predicates; ST_Intersects and && use the GiST index to
  pre-filter on bounding boxes before the exact test.
- In process: SpatialIndex wraps a shapely STRtree (an R-tree of bounding
  boxes) over already-loaded records, with the same prefilter-then-exact
  strategy.
"""

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from operator import attrgetter
from typing import Any, Generic, TypeVar

from geoalchemy2 import Geography, WKBElement, WKTElement
from geoalchemy2.shape import from_shape
from geoalchemy2.shape import to_shape as element_to_shape
from shapely import STRtree
from shapely.errors import ShapelyError
from shapely.geometry import MultiLineString, box, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform
from shapely.validation import explain_validity
from sqlalchemy import cast, func
from sqlalchemy import inspect as sa_inspect

WGS84_SRID = 4326
WGS84 = "EPSG:4326"
WEB_MERCATOR = "EPSG:3857"

# Spherical radius used by Web Mercator (the WGS84 semi-major axis)
MERCATOR_RADIUS_M = 6_378_137.0
# Mean Earth radius for local distance/area approximations
EARTH_RADIUS_M = 6_371_008.8

T = TypeVar("T")


class GeometryError(ValueError):
    """Geometry is malformed, of the wrong type, or outside WGS84 bounds."""


# =============================================================================
# CONVERSION
# =============================================================================


def to_shape(value: Any) -> BaseGeometry:
    """Coerce a GeoJSON mapping, WKB/WKT element or shapely geometry to shapely."""
    if isinstance(value, BaseGeometry):
        return value
    if isinstance(value, (WKBElement, WKTElement)):
        return element_to_shape(value)
    if isinstance(value, Mapping):
        try:
            return shape(value)
        except (ShapelyError, ValueError, KeyError, TypeError, IndexError) as exc:
            raise GeometryError(f"Invalid GeoJSON geometry: {exc}") from exc
    raise GeometryError(f"Cannot interpret {type(value).__name__} as a geometry")


def to_element(value: Any, srid: int = WGS84_SRID) -> WKBElement:
    """Shapely/GeoJSON -> WKBElement suitable for a Geometry column."""
    return from_shape(to_shape(value), srid=srid)


def to_geojson(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    return dict(mapping(to_shape(value)))


def query_element(value: Any) -> WKTElement:
    """Geometry literal for use inside a PostGIS predicate."""
    return WKTElement(to_shape(value).wkt, srid=WGS84_SRID)


# =============================================================================
# PROJECTION
# =============================================================================


def mercator_to_wgs84(x: float, y: float) -> tuple[float, float]:
    """EPSG:3857 metres -> EPSG:4326 lon/lat degrees."""
    lon = math.degrees(x / MERCATOR_RADIUS_M)
    lat = math.degrees(2 * math.atan(math.exp(y / MERCATOR_RADIUS_M)) - math.pi / 2)
    return lon, lat


def wgs84_to_mercator(lon: float, lat: float) -> tuple[float, float]:
    """EPSG:4326 lon/lat degrees -> EPSG:3857 metres."""
    x = MERCATOR_RADIUS_M * math.radians(lon)
    y = MERCATOR_RADIUS_M * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2))
    return x, y


def _pointwise(func: Callable[[float, float], tuple[float, float]]):
    """Adapt a point function for shapely.ops.transform (scalars or coordinate tuples)."""

    def apply(x, y, z=None):
        if isinstance(x, (int, float)):
            return func(x, y)
        pairs = [func(a, b) for a, b in zip(x, y)]
        return tuple(p[0] for p in pairs), tuple(p[1] for p in pairs)

    return apply


def reproject(geom: BaseGeometry, crs: str) -> BaseGeometry:
    """Bring a geometry from its source CRS into WGS84."""
    code = (crs or WGS84).upper().strip()
    if code in (WGS84, "WGS84", "4326"):
        return geom
    if code in (WEB_MERCATOR, "3857", "EPSG:900913"):
        return transform(_pointwise(mercator_to_wgs84), geom)
    raise GeometryError(f"Unsupported source coordinate system: {crs}")


# =============================================================================
# NORMALIZATION
# =============================================================================


def normalize_geometry(value: Any, expected: str, crs: str = WGS84) -> BaseGeometry:
    """Validate a geometry for storage in a column of type `expected`.

    Reprojects from `crs`, promotes a LineString to a MultiLineString and a
    single-part MultiPolygon to a Polygon, then checks type, validity and
    WGS84 bounds.
    """
    geom = reproject(to_shape(value), crs)
    expected = expected.upper()

    if expected == "MULTILINESTRING" and geom.geom_type == "LineString":
        geom = MultiLineString([geom])
    elif expected == "POLYGON" and geom.geom_type == "MultiPolygon" and len(geom.geoms) == 1:
        geom = geom.geoms[0]

    if geom.geom_type.upper() != expected:
        raise GeometryError(f"Expected {expected} geometry, got {geom.geom_type}")
    if geom.is_empty:
        raise GeometryError("Geometry is empty")
    if not geom.is_valid:
        raise GeometryError(f"Invalid geometry: {explain_validity(geom)}")

    minx, miny, maxx, maxy = geom.bounds
    if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
        raise GeometryError(
            "Coordinates fall outside WGS84 bounds; was the source projection recorded?"
        )
    return geom


def parse_bbox(value: str) -> tuple[float, float, float, float]:
    """Parse "minx,miny,maxx,maxy" (lon/lat)."""
    try:
        minx, miny, maxx, maxy = (float(part) for part in value.split(","))
    except ValueError as exc:
        raise GeometryError("bbox must be four comma-separated numbers: minx,miny,maxx,maxy") from exc
    if minx >= maxx or miny >= maxy:
        raise GeometryError("bbox minimums must be smaller than maximums")
    return minx, miny, maxx, maxy


# =============================================================================
# MEASUREMENT
# =============================================================================


@dataclass(frozen=True)
class Measurement:
    area_sq_m: float
    perimeter_m: float


def _local_metres(origin_lon: float, origin_lat: float):
    """Equirectangular projection centred on the origin; accurate at city scale."""
    scale_x = EARTH_RADIUS_M * math.cos(math.radians(origin_lat))

    def project(lon: float, lat: float) -> tuple[float, float]:
        return (
            scale_x * math.radians(lon - origin_lon),
            EARTH_RADIUS_M * math.radians(lat - origin_lat),
        )

    return _pointwise(project)


def measure(value: Any) -> Measurement:
    """Area (m²) and perimeter/length (m) of a WGS84 geometry."""
    geom = to_shape(value)
    centroid = geom.centroid
    local = transform(_local_metres(centroid.x, centroid.y), geom)
    return Measurement(area_sq_m=local.area, perimeter_m=local.length)


def distance_m(a: Any, b: Any) -> float:
    """Approximate ground distance in metres between two WGS84 geometries."""
    first, second = to_shape(a), to_shape(b)
    origin = first.centroid
    project = _local_metres(origin.x, origin.y)
    return transform(project, first).distance(transform(project, second))


def _degree_envelope(geom: BaseGeometry, meters: float) -> BaseGeometry:
    """Bounding box of geom expanded by `meters`, in degrees."""
    minx, miny, maxx, maxy = geom.bounds
    dlat = math.degrees(meters / EARTH_RADIUS_M)
    widest = max(abs(miny), abs(maxy))
    dlon = dlat / max(math.cos(math.radians(widest)), 1e-6)
    return box(minx - dlon, miny - dlat, maxx + dlon, maxy + dlat)


# =============================================================================
# IN-PROCESS SPATIAL INDEX
# =============================================================================


class SpatialIndex(Generic[T]):
    """STR-packed R-tree over records with a geometry attribute.

    Items without a geometry are left out of the tree.
    """

    def __init__(self, items: Iterable[T], geometry: Callable[[T], Any] = attrgetter("geometry")):
        self._items: list[T] = []
        self._geoms: list[BaseGeometry] = []
        for item in items:
            value = geometry(item)
            if value is None:
                continue
            self._items.append(item)
            self._geoms.append(to_shape(value))
        self._tree = STRtree(self._geoms)

    def __len__(self) -> int:
        return len(self._items)

    def _query(self, geom: Any, predicate: str | None) -> list[T]:
        indices = self._tree.query(to_shape(geom), predicate=predicate)
        return [self._items[i] for i in sorted(int(i) for i in indices)]

    def candidates(self, geom: Any) -> list[T]:
        """Bounding-box matches only."""
        return self._query(geom, None)

    def intersecting(self, geom: Any) -> list[T]:
        return self._query(geom, "intersects")

    def within(self, geom: Any) -> list[T]:
        """Items whose geometry lies inside `geom`."""
        # STRtree evaluates predicate(query_geom, item_geom)
        return self._query(geom, "contains")

    def containing(self, geom: Any) -> list[T]:
        """Items whose geometry contains `geom`."""
        return self._query(geom, "within")

    def near(self, geom: Any, meters: float) -> list[T]:
        target = to_shape(geom)
        envelope = _degree_envelope(target, meters)
        found = []
        for i in sorted(int(i) for i in self._tree.query(envelope)):
            if distance_m(target, self._geoms[i]) <= meters:
                found.append(self._items[i])
        return found

    def nearest(self, geom: Any) -> T | None:
        if not self._items:
            return None
        index = self._tree.nearest(to_shape(geom))
        return None if index is None else self._items[int(index)]


# =============================================================================
# POSTGIS PREDICATES
# =============================================================================


def intersects(column, geom: Any):
    return func.ST_Intersects(column, query_element(geom))


def within(column, geom: Any):
    """Column geometry lies inside `geom`."""
    return func.ST_Within(column, query_element(geom))


def within_distance(column, geom: Any, meters: float):
    geography = Geography(srid=WGS84_SRID)
    return func.ST_DWithin(cast(column, geography), cast(query_element(geom), geography), meters)


def bbox_filter(column, bbox: tuple[float, float, float, float]):
    minx, miny, maxx, maxy = bbox
    return column.op("&&")(func.ST_MakeEnvelope(minx, miny, maxx, maxy, WGS84_SRID))


# =============================================================================
# SERIALIZATION
# =============================================================================


def record_properties(record: Any, exclude: Iterable[str] = ()) -> dict[str, Any]:
    """Column values of an ORM record; secondary geometries become GeoJSON."""
    skip = set(exclude)
    props: dict[str, Any] = {}
    for attr in sa_inspect(record).mapper.column_attrs:
        if attr.key in skip:
            continue
        value = getattr(record, attr.key)
        if isinstance(value, (WKBElement, WKTElement)):
            value = to_geojson(value)
        props[attr.key] = value
    return props


def to_feature(record: Any, geometry_attr: str = "geometry") -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": str(record.id) if getattr(record, "id", None) is not None else None,
        "geometry": to_geojson(getattr(record, geometry_attr)),
        "properties": record_properties(record, exclude=(geometry_attr,)),
    }


def feature_collection(records: Iterable[Any], geometry_attr: str = "geometry", **metadata) -> dict[str, Any]:
    features = [to_feature(record, geometry_attr) for record in records]
    collection: dict[str, Any] = {"type": "FeatureCollection", "features": features}
    if metadata:
        collection["metadata"] = metadata
    return collection
