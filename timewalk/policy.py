"""Role-based authorization for every read and write.

One rule table, two enforcement points:
- authorize()/require() are called by the repository before each operation
- timewalk.ddl renders the same table as row-level-security policies, so
  clients that talk to the database directly get identical answers

Permissions come only from the caller's role tier (viewer < editor < admin).
There are no ownership rules: an editor may update a record someone else
created. The one exception is that a user can always read their own profile.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from .schemas import UserRole

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ResourceKind(str, Enum):
    """One member per table; the value is the table name."""

    PROFILES = "profiles"
    SOURCES = "sources"
    DATA_SOURCES = "data_sources"
    BUILDING_PARCELS = "building_parcels"
    BUILDINGS = "buildings"
    BOUNDARIES = "boundaries"
    STREETS = "streets"
    RASTER_DATA = "raster_data"
    HISTORICAL_EVENTS = "historical_events"
    MEDIA_ASSETS = "media_assets"
    BUILDING_MEDIA = "building_media"
    PARCEL_MEDIA = "parcel_media"
    BUILDING_NOTES = "building_notes"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


ROLE_RANK: dict[UserRole, int] = {
    UserRole.VIEWER: 0,
    UserRole.EDITOR: 1,
    UserRole.ADMIN: 2,
}


@dataclass(frozen=True)
class Rule:
    """Minimum role for an operation; None means anyone, including anonymous callers.

    allow_self grants the operation to the user the row belongs to.
    """

    minimum_role: UserRole | None
    allow_self: bool = False


DOMAIN_RULES: dict[Operation, Rule] = {
    Operation.READ: Rule(minimum_role=None),
    Operation.INSERT: Rule(minimum_role=UserRole.EDITOR),
    Operation.UPDATE: Rule(minimum_role=UserRole.EDITOR),
    Operation.DELETE: Rule(minimum_role=UserRole.ADMIN),
}

PROFILE_RULES: dict[Operation, Rule] = {
    Operation.READ: Rule(minimum_role=UserRole.ADMIN, allow_self=True),
    Operation.INSERT: Rule(minimum_role=UserRole.ADMIN),
    Operation.UPDATE: Rule(minimum_role=UserRole.ADMIN),
    Operation.DELETE: Rule(minimum_role=UserRole.ADMIN),
}


def rules_for(resource_kind: ResourceKind) -> dict[Operation, Rule]:
    if ResourceKind(resource_kind) is ResourceKind.PROFILES:
        return PROFILE_RULES
    return DOMAIN_RULES


class AuthorizationError(PermissionError):
    """Raised when the caller's role does not permit an operation."""

    def __init__(self, subject: "Subject", operation: Operation, resource_kind: ResourceKind):
        self.subject = subject
        self.operation = Operation(operation)
        self.resource_kind = ResourceKind(resource_kind)
        role = subject.role.value if subject.role else "anonymous"
        super().__init__(
            f"Role '{role}' may not {self.operation.value} {self.resource_kind.value}"
        )


@dataclass(frozen=True)
class Subject:
    """The caller: an authenticated user with a role, anonymous, or the service role."""

    user_id: uuid.UUID | None = None
    role: UserRole | None = None
    service: bool = False

    @classmethod
    def anonymous(cls) -> "Subject":
        return cls()

    @classmethod
    def service_role(cls) -> "Subject":
        """Privileged platform role used by ingestion and seeding; bypasses RLS."""
        return cls(service=True)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


def has_role(role: UserRole | None, minimum: UserRole | None) -> bool:
    if minimum is None:
        return True
    if role is None:
        return False
    return ROLE_RANK[UserRole(role)] >= ROLE_RANK[UserRole(minimum)]


def can(
    operation: Operation,
    role: UserRole | None,
    resource_kind: ResourceKind = ResourceKind.BUILDINGS,
) -> bool:
    """Pure role check, ignoring the self-access exception."""
    rule = rules_for(resource_kind)[Operation(operation)]
    return has_role(role, rule.minimum_role)


def authorize(
    subject: Subject,
    operation: Operation,
    resource_kind: ResourceKind,
    owner_id: uuid.UUID | None = None,
) -> Decision:
    """Decide whether `subject` may perform `operation` on `resource_kind`.

    owner_id is the user a row belongs to (the profile id for profiles); it
    only matters for rules with allow_self.
    """
    if subject.service:
        return Decision.ALLOW

    rule = rules_for(resource_kind)[Operation(operation)]
    if has_role(subject.role, rule.minimum_role):
        return Decision.ALLOW
    if rule.allow_self and subject.user_id is not None and subject.user_id == owner_id:
        return Decision.ALLOW
    return Decision.DENY


def require(
    subject: Subject,
    operation: Operation,
    resource_kind: ResourceKind,
    owner_id: uuid.UUID | None = None,
) -> None:
    """authorize() or raise AuthorizationError."""
    if authorize(subject, operation, resource_kind, owner_id) is Decision.DENY:
        error = AuthorizationError(subject, operation, resource_kind)
        logger.warning(f"Denied: {error} (user={subject.user_id})")
        raise error
