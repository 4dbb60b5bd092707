"""Tests for the authorization resolver."""

import uuid
from datetime import timedelta

import pytest

from tenantguard.authz.domain import EvalContext, Principal, TenantContext
from tenantguard.authz.errors import ResourceNotFound
from tenantguard.authz.resolver import Resolver
from tenantguard.authz.vocabulary import Action, EnablementTarget, Outcome, ReasonCode, Vocabulary


@pytest.fixture()
def resolver(clock) -> Resolver:
    return Resolver(clock=clock)


@pytest.fixture()
def fallback_resolver(clock) -> Resolver:
    return Resolver(hierarchical_fallback=True, clock=clock)


def check(resolver, world, code, action, principal="user", tenant=None, ctx=None):
    if principal == "user":
        principal = world.user
    return resolver.check(world.snapshot(), principal, code, action, tenant or world.tenant, ctx)


class TestScenarios:
    """End-to-end decisions on the HR catalog."""

    def test_a_department_match_allows(self, resolver, world):
        """Department-scoped grant with matching department."""
        world.grant(world.delete)
        decision = check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx("dept-hr"))
        assert decision.outcome is Outcome.ALLOW
        assert decision.reason is ReasonCode.EXPLICIT_GRANT
        assert decision.permission_id == world.delete.id

    def test_b_department_mismatch_denies(self, resolver, world):
        """The only candidate is discarded, so no grant remains."""
        world.grant(world.delete)
        decision = check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx("dept-sales"))
        assert decision.outcome is Outcome.DENY
        assert decision.reason is ReasonCode.NO_GRANT

    def test_c_module_disabled_for_company(self, resolver, world):
        world.grant(world.delete)
        world.switch(world.hr.id, False, company_id=world.company_x)
        decision = check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx())
        assert decision.reason is ReasonCode.DISABLED
        assert not decision.allowed

    def test_d_inherits_parent_action(self, fallback_resolver, world):
        """employees.delete defines no export; its parent does."""
        world.grant(world.export)
        decision = check(fallback_resolver, world, "hr.employees.delete", "export")
        assert decision.allowed
        assert decision.reason is ReasonCode.EXPLICIT_GRANT
        assert decision.permission_id == world.export.id
        assert decision.via_resource_id == world.employees.id
        assert decision.resource_id == world.employees_delete.id

    def test_e_expired_grant(self, resolver, world, clock):
        """Granted at T0 for one hour, checked at T0+2h."""
        t0 = clock.now
        world.grant(world.view, granted_at=t0, expires_at=t0 + timedelta(hours=1))
        clock.now = t0 + timedelta(minutes=30)
        assert check(resolver, world, "hr.employees", "view").allowed
        clock.now = t0 + timedelta(hours=2)
        decision = check(resolver, world, "hr.employees", "view")
        assert decision.reason is ReasonCode.NO_GRANT


class TestProperties:
    """Invariants that hold for every check."""

    def test_public_allows_regardless_of_assignments(self, resolver, world):
        world.catalog.define_permission(world.handbook.id, Action.VIEW)
        world.deny(world.catalog.find_permission(world.handbook.id, Action.VIEW))
        for principal in (world.user, None, Principal(user_id=uuid.uuid4())):
            decision = check(resolver, world, "hr.handbook", "view", principal=principal)
            assert decision.allowed
            assert decision.reason is ReasonCode.PUBLIC

    def test_public_precedes_enablement(self, resolver, world):
        world.switch(world.hr.id, False)
        assert check(resolver, world, "hr.handbook", "view").reason is ReasonCode.PUBLIC

    def test_expired_deny_does_not_count(self, resolver, world, clock):
        world.grant(world.view)
        world.deny(world.view, expires_at=clock.now - timedelta(seconds=1))
        assert check(resolver, world, "hr.employees", "view").allowed

    def test_deny_overrides_grant(self, resolver, world):
        world.grant(world.view)
        world.deny(world.view)
        decision = check(resolver, world, "hr.employees", "view")
        assert decision.reason is ReasonCode.EXPLICIT_DENY

    def test_deny_from_another_role_overrides(self, resolver, world):
        clerk = world.assignments.create_role("clerk", workspace_id=world.workspace_id)
        world.assignments.bind_role(world.user.user_id, clerk.id, world.workspace_id)
        world.grant(world.view)
        world.deny(world.view, role=clerk)
        assert check(resolver, world, "hr.employees", "view").reason is ReasonCode.EXPLICIT_DENY

    def test_unsatisfied_deny_is_discarded(self, resolver, world):
        """A deny whose condition fails does not block the grant."""
        world.grant(world.view)
        world.deny(world.view, conditions={"scope": "own"})
        ctx = EvalContext(owner_id=uuid.uuid4())
        assert check(resolver, world, "hr.employees", "view", ctx=ctx).allowed

    def test_company_disable_beats_workspace_enable_and_grant(self, resolver, world):
        world.grant(world.view)
        world.switch(world.hr.id, True)
        world.switch(world.hr.id, False, company_id=world.company_x)
        assert check(resolver, world, "hr.employees", "view").reason is ReasonCode.DISABLED

    def test_idempotent(self, resolver, world):
        world.grant(world.delete)
        first = check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx())
        second = check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx())
        assert first == second


class TestSteps:
    """Individual resolution steps."""

    def test_undefined_action(self, resolver, world):
        """No permission row for the action."""
        decision = check(resolver, world, "hr.employees", "approve")
        assert decision.reason is ReasonCode.UNDEFINED_PERMISSION

    def test_inactive_permission_is_undefined(self, resolver, world):
        world.grant(world.view)
        world.catalog.set_permission_active(world.view.id, False)
        assert check(resolver, world, "hr.employees", "view").reason is ReasonCode.UNDEFINED_PERMISSION

    def test_action_outside_vocabulary(self, world, clock):
        resolver = Resolver(vocabulary=Vocabulary.from_names(actions=["delete"]), clock=clock)
        world.grant(world.view)
        assert check(resolver, world, "hr.employees", "view").reason is ReasonCode.UNDEFINED_PERMISSION
        assert check(resolver, world, "hr.employees", "teleport").reason is ReasonCode.UNDEFINED_PERMISSION

    def test_fallback_off_by_default(self, resolver, world):
        world.grant(world.export)
        decision = check(resolver, world, "hr.employees.delete", "export")
        assert decision.reason is ReasonCode.UNDEFINED_PERMISSION

    def test_fallback_without_ancestor_definition(self, fallback_resolver, world):
        decision = check(fallback_resolver, world, "hr.employees.delete", "approve")
        assert decision.reason is ReasonCode.UNDEFINED_PERMISSION

    def test_fallback_skips_when_leaf_defines_action(self, fallback_resolver, world):
        """A leaf with its own (inactive) row does not inherit."""
        world.grant(world.export)
        own = world.catalog.define_permission(world.employees_delete.id, Action.EXPORT, is_active=False)
        decision = check(fallback_resolver, world, "hr.employees.delete", "export")
        assert decision.reason is ReasonCode.UNDEFINED_PERMISSION
        world.catalog.set_permission_active(own.id, True)
        assert check(fallback_resolver, world, "hr.employees.delete", "export").reason is ReasonCode.NO_GRANT

    def test_fallback_respects_disabled_parent(self, fallback_resolver, world):
        world.grant(world.export)
        world.switch(world.employees.id, False, target=EnablementTarget.RESOURCE)
        decision = check(fallback_resolver, world, "hr.employees.delete", "export")
        assert decision.reason is ReasonCode.DISABLED

    def test_no_roles(self, resolver, world):
        stranger = Principal(user_id=uuid.uuid4(), department_id="dept-hr")
        world.grant(world.view)
        assert check(resolver, world, "hr.employees", "view", principal=stranger).reason is ReasonCode.NO_GRANT

    def test_anonymous_on_protected_resource(self, resolver, world):
        world.grant(world.view)
        assert check(resolver, world, "hr.employees", "view", principal=None).reason is ReasonCode.NO_GRANT

    def test_grant_in_other_workspace_does_not_count(self, resolver, world):
        admin = world.assignments.create_role("admin", is_system=True)
        world.assignments.bind_role(world.user.user_id, admin.id, world.workspace_id)
        world.grant(world.view, role=admin, workspace_id=uuid.uuid4())
        assert check(resolver, world, "hr.employees", "view").reason is ReasonCode.NO_GRANT

    def test_override_replaces_template(self, resolver, world):
        """An own-scope override ignores the department template."""
        world.grant(world.delete, conditions={"scope": "own"})
        ctx = EvalContext(owner_id=world.user.user_id, department_id="dept-sales")
        assert check(resolver, world, "hr.employees.delete", "delete", ctx=ctx).allowed
        assert not check(resolver, world, "hr.employees.delete", "delete", ctx=world.dept_ctx()).allowed

    def test_system_role_applies_everywhere(self, resolver, world):
        admin = world.assignments.create_role("admin", is_system=True)
        auditor = Principal(user_id=uuid.uuid4())
        world.assignments.bind_role(auditor.user_id, admin.id, world.workspace_id)
        world.grant(world.view, role=admin)
        assert check(resolver, world, "hr.employees", "view", principal=auditor).allowed

    def test_company_role_isolated_by_company(self, resolver, world):
        controller = world.assignments.create_role("controller", company_id=world.company_x)
        world.assignments.bind_role(world.user.user_id, controller.id, world.workspace_id)
        world.assignments.unbind_role(world.user.user_id, world.hr_manager.id, world.workspace_id)
        world.grant(world.view, role=controller)
        assert check(resolver, world, "hr.employees", "view").allowed
        other = TenantContext(workspace_id=world.workspace_id, company_id=world.company_y)
        assert not check(resolver, world, "hr.employees", "view", tenant=other).allowed

    def test_unknown_resource_raises(self, resolver, world):
        with pytest.raises(ResourceNotFound):
            check(resolver, world, "hr.payroll", "view")


class TestEffectivePermissions:
    """Listing what a principal can do."""

    def test_lists_grants_with_conditions(self, resolver, world):
        world.grant(world.view)
        world.grant(world.delete)
        items = resolver.effective_permissions(world.snapshot(), world.user, world.tenant)
        by_key = {(i.resource_code, i.action): i for i in items}
        assert ("hr.employees", Action.VIEW) in by_key
        assert by_key[("hr.employees.delete", Action.DELETE)].conditions == world.delete.conditions
        assert ("hr.employees", Action.EXPORT) not in by_key

    def test_unconditional_deny_removes_entry(self, resolver, world):
        world.grant(world.view)
        world.deny(world.view)
        items = resolver.effective_permissions(world.snapshot(), world.user, world.tenant)
        assert all(i.permission_id != world.view.id for i in items)

    def test_disabled_module_lists_nothing_protected(self, resolver, world):
        world.grant(world.view)
        world.switch(world.hr.id, False)
        assert resolver.effective_permissions(world.snapshot(), world.user, world.tenant) == []

    def test_public_permissions_listed(self, resolver, world):
        view = world.catalog.define_permission(world.handbook.id, Action.VIEW)
        items = resolver.effective_permissions(world.snapshot(), world.user, world.tenant)
        assert [i.permission_id for i in items] == [view.id]

    def test_structured_attribute_template(self, resolver, world):
        """A template with array-valued attributes is listed with its conditions."""
        edit = world.catalog.define_permission(
            world.employees.id, Action.EDIT, {"customConditions": {"grades": ["a", "b"]}}
        )
        world.grant(edit)
        items = resolver.effective_permissions(world.snapshot(), world.user, world.tenant)
        [item] = [i for i in items if i.permission_id == edit.id]
        assert item.conditions == edit.conditions
