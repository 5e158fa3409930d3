"""FastAPI application for the TimeWalk historical map."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any
from uuid import UUID

import logfire
from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from shapely.geometry import Point
from sqlalchemy.orm import Session
from starlette.requests import Request

from . import __version__
from .database import engine, get_db, init_db
from .models import Profile
from .policy import AuthorizationError, ResourceKind, Subject
from .repository import (
    ConstraintViolationError,
    RecordNotFoundError,
    Repository,
    VersionedRepository,
    repository_for,
)
from .schemas import SupersedeRequest, UserRole
from .spatial import GeometryError, feature_collection, parse_bbox, record_properties, to_feature
from .temporal import Resolution, ValidityError, VersionOverlapError

logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="TimeWalk API",
    description="Time-versioned parcels, buildings, boundaries and streets of Manhattan (1609, 1660, 1776)",
    version=__version__,
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)
    logfire.instrument_sqlalchemy(engine=engine)

# CORS for the map frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error mapping
# =============================================================================


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConstraintViolationError)
async def constraint_violation_handler(request: Request, exc: ConstraintViolationError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "kind": exc.kind, "constraint": exc.constraint},
    )


@app.exception_handler(VersionOverlapError)
async def version_overlap_handler(request: Request, exc: VersionOverlapError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "key": str(exc.key),
            "conflicts": [str(getattr(c, "id", c)) for c in exc.conflicts],
        },
    )


@app.exception_handler(ValidityError)
@app.exception_handler(GeometryError)
async def invalid_value_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    errors = exc.errors(include_url=False, include_context=False)
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


# =============================================================================
# Auth
# =============================================================================

# Tokens are issued by the hosting platform's auth service; the bearer value
# is the user id it vouches for.
security = HTTPBearer(auto_error=False)


async def get_subject(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> Subject:
    """Resolve the caller and their role from the profiles table."""
    if not credentials:
        return Subject.anonymous()
    try:
        user_id = UUID(credentials.credentials)
    except ValueError:
        raise HTTPException(status_code=401, detail="Bearer token must be a user id")

    profile = db.get(Profile, user_id)
    role = profile.role if profile else UserRole.VIEWER
    return Subject(user_id=user_id, role=role)


# =============================================================================
# Helpers
# =============================================================================


def serialize(record) -> dict[str, Any]:
    """GeoJSON feature for versioned records, plain properties otherwise."""
    geometry_attr = getattr(type(record), "__geometry_column__", None)
    if geometry_attr:
        return to_feature(record, geometry_attr)
    return record_properties(record)


def versioned(repo: Repository) -> VersionedRepository:
    if not isinstance(repo, VersionedRepository):
        raise HTTPException(status_code=404, detail=f"{repo.kind.value} is not a versioned table")
    return repo


def identity(repo: Repository, *ids: UUID):
    """Primary key value for session.get, checked against the table's key arity."""
    if len(ids) != len(repo.model.__mapper__.primary_key):
        raise HTTPException(status_code=404, detail=f"Wrong number of ids for {repo.kind.value}")
    return ids[0] if len(ids) == 1 else ids


def resolution_response(repo: VersionedRepository, resolution: Resolution) -> dict[str, Any]:
    return feature_collection(
        resolution.records,
        repo.model.__geometry_column__,
        as_of=resolution.as_of.isoformat(),
        count=len(resolution.records),
        anomalies={
            str(key): [str(record.id) for record in rows]
            for key, rows in resolution.anomalies.items()
        },
    )


def get_repository(
    kind: ResourceKind,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_subject),
) -> Repository:
    return repository_for(db, subject, kind)


# =============================================================================
# Endpoints
# =============================================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "TimeWalk API"}


@app.get("/api/me")
async def read_me(
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_subject),
):
    """The caller's own profile."""
    repo = repository_for(db, subject, ResourceKind.PROFILES)
    return record_properties(repo.me())


@app.get("/api/{kind}")
async def list_records(
    repo: Repository = Depends(get_repository),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    return [serialize(record) for record in repo.list(limit=limit, offset=offset)]


@app.get("/api/{kind}/current")
async def current_records(
    repo: Repository = Depends(get_repository),
    as_of: date | None = Query(None, description="Reference date; defaults to today"),
    bbox: str | None = Query(None, description="minx,miny,maxx,maxy in EPSG:4326"),
):
    """Versions valid at as_of, as a FeatureCollection.

    metadata.anomalies lists logical keys with more than one valid version.
    """
    repo = versioned(repo)
    bounds = parse_bbox(bbox) if bbox else None
    return resolution_response(repo, repo.current(as_of=as_of, bbox=bounds))


@app.get("/api/{kind}/overlaps")
async def overlapping_versions(repo: Repository = Depends(get_repository)):
    """Pairs of versions of the same object whose validity windows overlap."""
    repo = versioned(repo)
    return [
        {
            "key": str(overlap.key),
            "first": {"id": str(overlap.first.id), "valid_from": overlap.first.valid_from, "valid_to": overlap.first.valid_to},
            "second": {"id": str(overlap.second.id), "valid_from": overlap.second.valid_from, "valid_to": overlap.second.valid_to},
        }
        for overlap in repo.overlaps()
    ]


@app.get("/api/{kind}/near")
async def records_near(
    repo: Repository = Depends(get_repository),
    lon: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    meters: float = Query(100.0, gt=0, le=50_000),
    as_of: date | None = Query(None),
):
    repo = versioned(repo)
    return resolution_response(repo, repo.near(Point(lon, lat), meters, as_of=as_of))


@app.get("/api/{kind}/history/{logical_id}")
async def record_history(logical_id: str, repo: Repository = Depends(get_repository)):
    """Every version of one logical object, oldest first."""
    repo = versioned(repo)
    versions = repo.history(logical_id)
    return feature_collection(versions, repo.model.__geometry_column__, key=logical_id)


@app.get("/api/{kind}/{record_id}")
async def read_record(record_id: UUID, repo: Repository = Depends(get_repository)):
    return serialize(repo.get(identity(repo, record_id)))


@app.post("/api/{kind}", status_code=201)
async def create_record(
    payload: dict[str, Any] = Body(...),
    repo: Repository = Depends(get_repository),
):
    return serialize(repo.insert(payload))


@app.patch("/api/{kind}/{record_id}")
async def update_record(
    record_id: UUID,
    changes: dict[str, Any] = Body(...),
    repo: Repository = Depends(get_repository),
):
    """Correct attributes in place. Use /supersede when the world changed."""
    return serialize(repo.update(identity(repo, record_id), changes))


@app.post("/api/{kind}/{record_id}/supersede", status_code=201)
async def supersede_record(
    record_id: UUID,
    request: SupersedeRequest,
    repo: Repository = Depends(get_repository),
):
    """Close a version at request.effective and open its successor there."""
    repo = versioned(repo)
    return serialize(repo.supersede(record_id, request.changes, request.effective))


@app.delete("/api/{kind}/{record_id}", status_code=204)
async def delete_record(record_id: UUID, repo: Repository = Depends(get_repository)):
    repo.delete(identity(repo, record_id))


@app.delete("/api/{kind}/{first_id}/{second_id}", status_code=204)
async def delete_link(first_id: UUID, second_id: UUID, repo: Repository = Depends(get_repository)):
    """Remove a building_media or parcel_media link."""
    repo.delete(identity(repo, first_id, second_id))
