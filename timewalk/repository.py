"""Data-access boundary.

Every read and write of TimeWalk data goes through a Repository, which:

1. authorizes the caller (timewalk.policy.require) before touching the store
2. validates payloads with the pydantic schema for the table
3. runs each write in its own transaction, rolling back on any failure and
   translating IntegrityError into ConstraintViolationError

VersionedRepository adds the temporal operations: as-of queries, history,
overlap reports and supersession (close the old version, open the new one,
in a single commit).
"""

import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import date
from typing import Any

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from .models import MODELS_BY_TABLE, VERSIONED_MODELS
from .policy import (
    AuthorizationError,
    Decision,
    Operation,
    ResourceKind,
    Subject,
    authorize,
    require,
)
from .schemas import SCHEMAS_BY_TABLE, RecordBase
from .spatial import bbox_filter, intersects, to_geojson, within_distance
from .temporal import (
    ENFORCE_NON_OVERLAP,
    Overlap,
    Resolution,
    ValidityError,
    ValidityInterval,
    ensure_no_overlap,
    find_overlaps,
    resolve_as_of,
    today,
    valid_at,
)

logger = logging.getLogger(__name__)

# Postgres SQLSTATE -> constraint kind
CONSTRAINT_KINDS = {
    "23505": "unique",
    "23503": "foreign_key",
    "23514": "check",
    "23502": "not_null",
    "23P01": "exclusion",
}


class RecordNotFoundError(LookupError):
    def __init__(self, kind: ResourceKind, identity: Any):
        self.kind = ResourceKind(kind)
        self.identity = identity
        super().__init__(f"No {self.kind.value} record {identity}")


class ConstraintViolationError(ValueError):
    """The store rejected a write (unique, foreign key, check or not-null)."""

    def __init__(self, kind: str, message: str, constraint: str | None = None):
        self.kind = kind
        self.constraint = constraint
        super().__init__(message)

    @classmethod
    def from_integrity_error(cls, exc: IntegrityError) -> "ConstraintViolationError":
        orig = exc.orig
        kind = CONSTRAINT_KINDS.get(getattr(orig, "pgcode", None), "integrity")
        diag = getattr(orig, "diag", None)
        constraint = getattr(diag, "constraint_name", None)
        message = str(orig).strip().splitlines()[0] if orig is not None else str(exc)
        return cls(kind, message, constraint)


class Repository:
    """CRUD for one table, on behalf of one subject."""

    def __init__(self, session: Session, subject: Subject, kind: ResourceKind | str):
        self.session = session
        self.subject = subject
        self.kind = ResourceKind(kind)
        self.model = MODELS_BY_TABLE[self.kind.value]
        self.schema: type[RecordBase] = SCHEMAS_BY_TABLE[self.kind.value]

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def owner_of(self, identity: Any) -> uuid.UUID | None:
        """User a row belongs to, for self-access rules. Only profiles have one."""
        return None

    def _require(self, operation: Operation, owner_id: uuid.UUID | None = None) -> None:
        require(self.subject, operation, self.kind, owner_id)

    def _query(self) -> Query:
        return self.session.query(self.model)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            error = ConstraintViolationError.from_integrity_error(exc)
            logger.warning(f"{self.kind.value}: {error.kind} constraint violated: {error}")
            raise error from exc
        except Exception:
            self.session.rollback()
            raise

    def _load(self, identity: Any, lock: bool = False):
        if lock:
            # SELECT ... FOR UPDATE, re-read even if the row is already in the session
            record = self.session.get(self.model, identity, with_for_update=True, populate_existing=True)
        else:
            record = self.session.get(self.model, identity)
        if record is None:
            raise RecordNotFoundError(self.kind, identity)
        return record

    def validate(self, payload: Mapping[str, Any] | BaseModel) -> RecordBase:
        if isinstance(payload, self.schema):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        return self.schema.model_validate(payload)

    def snapshot(self, record) -> dict[str, Any]:
        """Schema fields of a stored record, geometries as GeoJSON."""
        values = {}
        for name in self.schema.model_fields:
            value = getattr(record, name, None)
            if name in self.schema.geometry_fields:
                value = to_geojson(value)
            values[name] = value
        return values

    def merge(self, record, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Stored values overlaid with `changes`; derived values reset if geometry moved."""
        merged = self.snapshot(record)
        if any(name in changes for name in self.schema.geometry_fields):
            for name in self.schema.derived_fields:
                if name not in changes:
                    merged[name] = None
        merged.update(changes)
        return merged

    def build(self, data: RecordBase):
        record = self.model(**data.to_row())
        if "created_by" in self.model.__table__.c and self.subject.user_id is not None:
            record.created_by = self.subject.user_id
        return record

    def before_insert(self, record) -> None:
        pass

    def before_update(self, record, changed: set[str]) -> None:
        pass

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def get(self, identity: Any):
        self._require(Operation.READ, owner_id=self.owner_of(identity))
        return self._load(identity)

    def list(self, limit: int = 100, offset: int = 0) -> list:
        self._require(Operation.READ)
        primary_key = self.model.__mapper__.primary_key
        return self._query().order_by(*primary_key).offset(offset).limit(limit).all()

    def insert(self, payload: Mapping[str, Any] | BaseModel):
        self._require(Operation.INSERT)
        data = self.validate(payload)
        with self._transaction():
            record = self.build(data)
            self.before_insert(record)
            self.session.add(record)
        logger.info(f"Inserted {self.kind.value} record")
        return record

    def update(self, identity: Any, changes: Mapping[str, Any]):
        """Correct attributes in place. Changes are re-validated against the full row."""
        self._require(Operation.UPDATE, owner_id=self.owner_of(identity))
        record = self._load(identity)
        data = self.validate(self.merge(record, changes))
        row = data.to_row()

        changed = set(changes)
        if changed & set(self.schema.geometry_fields):
            changed |= set(self.schema.derived_fields)

        with self._transaction():
            for name in changed:
                setattr(record, name, row[name])
            self.before_update(record, changed)
        return record

    def delete(self, identity: Any) -> None:
        self._require(Operation.DELETE, owner_id=self.owner_of(identity))
        record = self._load(identity)
        with self._transaction():
            self.session.delete(record)
        logger.info(f"Deleted {self.kind.value} record {identity}")


class ProfileRepository(Repository):
    """Profiles are readable by their owner and by admins; admins manage them."""

    def __init__(self, session: Session, subject: Subject, kind: ResourceKind | str = ResourceKind.PROFILES):
        super().__init__(session, subject, kind)

    def owner_of(self, identity: Any) -> uuid.UUID | None:
        return identity if isinstance(identity, uuid.UUID) else uuid.UUID(str(identity))

    def list(self, limit: int = 100, offset: int = 0) -> list:
        if authorize(self.subject, Operation.READ, self.kind) is Decision.ALLOW:
            return super().list(limit, offset)
        if self.subject.user_id is None:
            raise AuthorizationError(self.subject, Operation.READ, self.kind)
        # Non-admins see only their own row, as under row-level security
        return self._query().filter(self.model.id == self.subject.user_id).all()

    def me(self):
        if self.subject.user_id is None:
            raise AuthorizationError(self.subject, Operation.READ, self.kind)
        return self.get(self.subject.user_id)


class VersionedRepository(Repository):
    """Repository for tables with a [valid_from, valid_to) window."""

    def __init__(
        self,
        session: Session,
        subject: Subject,
        kind: ResourceKind | str,
        enforce_non_overlap: bool = ENFORCE_NON_OVERLAP,
    ):
        super().__init__(session, subject, kind)
        self.enforce_non_overlap = enforce_non_overlap

    @property
    def key_column(self):
        return getattr(self.model, self.model.__logical_key__)

    @property
    def geometry_column(self):
        return getattr(self.model, self.model.__geometry_column__)

    @property
    def unique_columns(self) -> list[str]:
        """Columns other than the primary key that only one row may hold."""
        return [c.key for c in self.model.__table__.columns if c.unique and not c.primary_key]

    def _siblings(self, record) -> list:
        """Other versions of the record's logical object."""
        key = getattr(record, self.model.__logical_key__)
        if key is None:
            return []
        query = self._query().filter(self.key_column == key)
        if record.id is not None:
            query = query.filter(self.model.id != record.id)
        return query.with_for_update().all()

    def _check_overlap(self, record) -> None:
        if not self.enforce_non_overlap:
            return
        key = getattr(record, self.model.__logical_key__)
        ensure_no_overlap(ValidityInterval.of(record), self._siblings(record), key)

    def before_insert(self, record) -> None:
        self._check_overlap(record)

    def before_update(self, record, changed: set[str]) -> None:
        if changed & {"valid_from", "valid_to", self.model.__logical_key__}:
            self._check_overlap(record)

    # -------------------------------------------------------------------------
    # Temporal reads
    # -------------------------------------------------------------------------

    def current(
        self,
        as_of: date | None = None,
        bbox: tuple[float, float, float, float] | None = None,
    ) -> Resolution:
        """Versions valid at `as_of` (default today), optionally inside a bbox."""
        self._require(Operation.READ)
        as_of = as_of or today()
        query = self._query().filter(valid_at(self.model, as_of))
        if bbox is not None:
            query = query.filter(bbox_filter(self.geometry_column, bbox))
        return resolve_as_of(query.all(), as_of)

    def history(self, logical_id: str) -> list:
        """Every version of one logical object, oldest first."""
        self._require(Operation.READ)
        versions = (
            self._query()
            .filter(self.key_column == logical_id)
            .order_by(self.model.valid_from)
            .all()
        )
        if not versions:
            raise RecordNotFoundError(self.kind, logical_id)
        return versions

    def intersecting(self, geom: Any, as_of: date | None = None) -> Resolution:
        self._require(Operation.READ)
        as_of = as_of or today()
        query = self._query().filter(
            valid_at(self.model, as_of),
            intersects(self.geometry_column, geom),
        )
        return resolve_as_of(query.all(), as_of)

    def near(self, geom: Any, meters: float, as_of: date | None = None) -> Resolution:
        self._require(Operation.READ)
        as_of = as_of or today()
        query = self._query().filter(
            valid_at(self.model, as_of),
            within_distance(self.geometry_column, geom, meters),
        )
        return resolve_as_of(query.all(), as_of)

    def overlaps(self) -> list[Overlap]:
        """Pairs of versions of the same object with overlapping windows."""
        self._require(Operation.READ)
        return find_overlaps(self._query().filter(self.key_column.isnot(None)).all())

    # -------------------------------------------------------------------------
    # Supersession
    # -------------------------------------------------------------------------

    def supersede(self, identity: Any, changes: Mapping[str, Any], effective: date):
        """Close version `identity` at `effective` and open its successor there.

        The successor starts from the old version's values overlaid with
        `changes`, keeps its logical key and inherits its end date. Unique
        columns such as a building's timewalk_id move to the successor, so
        the scene object follows the newest version. The old row is locked
        for the duration, and both writes commit together or not at all.
        """
        self._require(Operation.UPDATE)
        self._require(Operation.INSERT)
        key_name = self.model.__logical_key__

        with self._transaction():
            old = self._load(identity, lock=True)

            if old.valid_to is not None and old.valid_to <= effective:
                raise ValidityError(f"Version {old.id} already ended on {old.valid_to}")
            ValidityInterval.of(old).close(effective)

            if key_name in changes and changes[key_name] != getattr(old, key_name):
                raise ValidityError(f"A successor must keep the {key_name} of the version it replaces")

            merged = self.merge(old, {k: v for k, v in changes.items() if k != "valid_from"})
            merged["valid_from"] = effective
            data = self.validate(merged)

            old.valid_to = effective
            for name in self.unique_columns:
                setattr(old, name, None)
            self.session.flush()

            successor = self.build(data)
            self._check_overlap(successor)
            self.session.add(successor)

        logger.info(
            f"Superseded {self.kind.value} {getattr(old, key_name) or old.id} at {effective}"
        )
        return successor


def repository_for(session: Session, subject: Subject, kind: ResourceKind | str) -> Repository:
    kind = ResourceKind(kind)
    if kind is ResourceKind.PROFILES:
        return ProfileRepository(session, subject, kind)
    if MODELS_BY_TABLE[kind.value] in VERSIONED_MODELS:
        return VersionedRepository(session, subject, kind)
    return Repository(session, subject, kind)
