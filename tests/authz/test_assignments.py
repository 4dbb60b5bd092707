"""Tests for roles, bindings and assignments."""

import uuid
from datetime import timedelta

import pytest

from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.domain import TenantContext, utc_now
from tenantguard.authz.errors import AssignmentError, ConfigurationError
from tenantguard.authz.vocabulary import RoleScope


@pytest.fixture()
def store() -> AssignmentStore:
    return AssignmentStore()


class TestRoles:
    """Role scope rules."""

    def test_scope_is_derived(self, store):
        workspace_id, company_id = uuid.uuid4(), uuid.uuid4()
        assert store.create_role("admin", is_system=True).scope is RoleScope.SYSTEM
        assert store.create_role("hr", workspace_id=workspace_id).scope is RoleScope.WORKSPACE
        assert store.create_role("hr", company_id=company_id).scope is RoleScope.COMPANY

    def test_both_scopes_rejected(self, store):
        with pytest.raises(ConfigurationError):
            store.create_role("hr", workspace_id=uuid.uuid4(), company_id=uuid.uuid4())

    def test_system_role_with_scope_rejected(self, store):
        with pytest.raises(ConfigurationError):
            store.create_role("admin", is_system=True, workspace_id=uuid.uuid4())

    def test_unscoped_role_rejected(self, store):
        with pytest.raises(ConfigurationError):
            store.create_role("hr")

    def test_code_unique_within_scope(self, store):
        """The same code may exist in two workspaces but not twice in one."""
        ws_a, ws_b = uuid.uuid4(), uuid.uuid4()
        store.create_role("hr", workspace_id=ws_a)
        store.create_role("hr", workspace_id=ws_b)
        with pytest.raises(ConfigurationError):
            store.create_role("hr", workspace_id=ws_a)

    def test_system_role_cannot_be_deleted(self, store):
        admin = store.create_role("admin", is_system=True)
        with pytest.raises(ConfigurationError):
            store.delete_role(admin.id)

    def test_deleted_role_is_gone(self, store):
        role = store.create_role("hr", workspace_id=uuid.uuid4())
        store.delete_role(role.id)
        assert store.get_role(role.id) is None
        assert role not in store.roles()


class TestBindings:
    """Which roles a user holds in a tenant context."""

    def test_roles_for_workspace(self, world):
        assert world.assignments.roles_for(world.user.user_id, world.tenant) == {world.hr_manager.id}

    def test_other_workspace_sees_nothing(self, world):
        other = TenantContext(workspace_id=uuid.uuid4())
        assert world.assignments.roles_for(world.user.user_id, other) == frozenset()

    def test_company_bound_binding(self, world):
        """A binding limited to one company only applies in that company."""
        role = world.assignments.create_role("auditor", workspace_id=world.workspace_id)
        world.assignments.bind_role(world.user.user_id, role.id, world.workspace_id, company_id=world.company_y)
        assert role.id not in world.assignments.roles_for(world.user.user_id, world.tenant)
        other = TenantContext(workspace_id=world.workspace_id, company_id=world.company_y)
        assert role.id in world.assignments.roles_for(world.user.user_id, other)

    def test_company_role_needs_matching_company(self, world):
        role = world.assignments.create_role("controller", company_id=world.company_x)
        world.assignments.bind_role(world.user.user_id, role.id, world.workspace_id)
        assert role.id in world.assignments.roles_for(world.user.user_id, world.tenant)
        other = TenantContext(workspace_id=world.workspace_id, company_id=world.company_y)
        assert role.id not in world.assignments.roles_for(world.user.user_id, other)

    def test_foreign_workspace_role_does_not_apply(self, world):
        """A workspace role bound in another workspace never leaks."""
        role = world.assignments.create_role("hr", workspace_id=uuid.uuid4())
        world.assignments.bind_role(world.user.user_id, role.id, world.workspace_id)
        assert role.id not in world.assignments.roles_for(world.user.user_id, world.tenant)

    def test_inactive_role_does_not_apply(self, world):
        world.assignments.set_role_active(world.hr_manager.id, False)
        assert world.assignments.roles_for(world.user.user_id, world.tenant) == frozenset()

    def test_duplicate_binding_rejected(self, world):
        with pytest.raises(AssignmentError):
            world.assignments.bind_role(world.user.user_id, world.hr_manager.id, world.workspace_id)

    def test_unbind(self, world):
        assert world.assignments.unbind_role(world.user.user_id, world.hr_manager.id, world.workspace_id)
        assert world.assignments.roles_for(world.user.user_id, world.tenant) == frozenset()


class TestAssignments:
    """Grant/deny rows and expiry filtering."""

    def test_deny_coexists_with_grant(self, world):
        world.grant(world.view)
        world.deny(world.view)
        found = world.assignments.find_assignments(
            {world.hr_manager.id}, world.view.id, world.workspace_id, utc_now()
        )
        assert sorted(a.is_granted for a in found) == [False, True]

    def test_duplicate_grant_rejected(self, world):
        world.grant(world.view)
        with pytest.raises(AssignmentError):
            world.grant(world.view)

    def test_unknown_role_rejected(self, world):
        with pytest.raises(AssignmentError):
            world.assignments.save_assignment(uuid.uuid4(), world.view.id, world.workspace_id)

    def test_expired_rows_filtered_at_query_time(self, world):
        """The same row is returned before expiry and hidden after."""
        now = utc_now()
        world.grant(world.view, expires_at=now + timedelta(hours=1))
        args = ({world.hr_manager.id}, world.view.id, world.workspace_id)
        assert len(world.assignments.find_assignments(*args, now)) == 1
        assert world.assignments.find_assignments(*args, now + timedelta(hours=1)) == []
        assert world.assignments.find_assignments(*args, now + timedelta(hours=2)) == []

    def test_filtered_by_workspace_and_role(self, world):
        admin = world.assignments.create_role("admin", is_system=True)
        world.grant(world.view, role=admin, workspace_id=uuid.uuid4())
        other_role = world.assignments.create_role("clerk", workspace_id=world.workspace_id)
        world.grant(world.view, role=other_role)
        found = world.assignments.find_assignments(
            {world.hr_manager.id, admin.id}, world.view.id, world.workspace_id, utc_now()
        )
        assert found == []

    def test_workspace_role_rejected_in_other_workspace(self, world):
        """A workspace role can only hold rows in its own workspace."""
        with pytest.raises(AssignmentError):
            world.grant(world.view, workspace_id=uuid.uuid4())
        company_role = world.assignments.create_role("auditor", company_id=world.company_x)
        assert world.grant(world.view, role=company_role).role_id == company_role.id

    def test_revoke(self, world):
        assignment = world.grant(world.view)
        assert world.assignments.revoke(assignment.id)
        assert not world.assignments.revoke(assignment.id)
        world.grant(world.view)

    def test_condition_override_decoded(self, world):
        assignment = world.grant(world.delete, conditions={"scope": "own"})
        assert assignment.conditions is not None
        with pytest.raises(ConfigurationError):
            world.deny(world.delete, conditions={"scope": "nowhere"})
