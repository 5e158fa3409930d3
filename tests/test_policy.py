"""Tests for role-based authorization."""

import itertools
import uuid

import pytest

from timewalk.policy import (
    AuthorizationError,
    Decision,
    Operation,
    ResourceKind,
    Subject,
    authorize,
    can,
    has_role,
    require,
)
from timewalk.schemas import UserRole

ROLES = [UserRole.VIEWER, UserRole.EDITOR, UserRole.ADMIN]
DOMAIN_KINDS = [kind for kind in ResourceKind if kind is not ResourceKind.PROFILES]


def test_role_order():
    assert has_role(UserRole.ADMIN, UserRole.EDITOR)
    assert has_role(UserRole.EDITOR, UserRole.EDITOR)
    assert not has_role(UserRole.VIEWER, UserRole.EDITOR)
    assert not has_role(None, UserRole.VIEWER)
    assert has_role(None, None)


@pytest.mark.parametrize("kind", list(ResourceKind))
@pytest.mark.parametrize("operation", list(Operation))
def test_privilege_is_monotone(kind, operation):
    for lower, higher in itertools.combinations(ROLES, 2):
        if can(operation, lower, kind):
            assert can(operation, higher, kind)


@pytest.mark.parametrize("kind", DOMAIN_KINDS)
def test_domain_rule_table(kind):
    assert can(Operation.READ, None, kind)
    assert not can(Operation.INSERT, UserRole.VIEWER, kind)
    assert can(Operation.INSERT, UserRole.EDITOR, kind)
    assert can(Operation.UPDATE, UserRole.EDITOR, kind)
    assert not can(Operation.DELETE, UserRole.EDITOR, kind)
    assert can(Operation.DELETE, UserRole.ADMIN, kind)


def test_boundary_insert_scenario(viewer, editor):
    assert authorize(viewer, Operation.INSERT, ResourceKind.BOUNDARIES) is Decision.DENY
    assert authorize(editor, Operation.INSERT, ResourceKind.BOUNDARIES) is Decision.ALLOW
    assert authorize(viewer, Operation.READ, ResourceKind.BOUNDARIES) is Decision.ALLOW


def test_anonymous_reads_public_data():
    anonymous = Subject.anonymous()
    assert authorize(anonymous, Operation.READ, ResourceKind.BUILDINGS) is Decision.ALLOW
    assert authorize(anonymous, Operation.INSERT, ResourceKind.BUILDINGS) is Decision.DENY


def test_editors_update_records_they_did_not_create(editor):
    someone_else = uuid.uuid4()
    decision = authorize(editor, Operation.UPDATE, ResourceKind.BUILDINGS, owner_id=someone_else)
    assert decision is Decision.ALLOW


class TestProfiles:
    def test_own_profile_is_readable(self, viewer):
        assert authorize(viewer, Operation.READ, ResourceKind.PROFILES, owner_id=viewer.user_id) is Decision.ALLOW

    def test_other_profiles_are_not(self, viewer, editor):
        assert authorize(viewer, Operation.READ, ResourceKind.PROFILES, owner_id=editor.user_id) is Decision.DENY

    def test_admin_reads_any_profile(self, admin, viewer):
        assert authorize(admin, Operation.READ, ResourceKind.PROFILES, owner_id=viewer.user_id) is Decision.ALLOW

    @pytest.mark.parametrize("operation", [Operation.INSERT, Operation.UPDATE, Operation.DELETE])
    def test_mutation_is_admin_only(self, operation, editor, admin):
        assert authorize(editor, operation, ResourceKind.PROFILES, owner_id=editor.user_id) is Decision.DENY
        assert authorize(admin, operation, ResourceKind.PROFILES) is Decision.ALLOW


def test_service_role_bypasses_rules():
    service = Subject.service_role()
    for kind, operation in itertools.product(ResourceKind, Operation):
        assert authorize(service, operation, kind) is Decision.ALLOW


def test_require_raises(viewer, caplog):
    with pytest.raises(AuthorizationError) as excinfo:
        require(viewer, Operation.DELETE, ResourceKind.BUILDINGS)
    assert excinfo.value.operation is Operation.DELETE
    assert excinfo.value.resource_kind is ResourceKind.BUILDINGS
    assert "viewer" in str(excinfo.value)
    assert "Denied" in caplog.text


def test_require_accepts_string_values(editor):
    require(editor, "insert", "streets")
