"""
Authorization Resolver.

Combines a workspace snapshot (catalog, enablement, assignments) with the
runtime context into a Decision. The resolver holds no mutable state and
performs no I/O; the engine wraps it with caching, fail-closed error
handling and auditing.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.catalog import CatalogStore
from tenantguard.authz.conditions import ConditionSet, conditions_satisfied
from tenantguard.authz.domain import (
    EMPTY_EVAL_CONTEXT,
    Assignment,
    Decision,
    EvalContext,
    Permission,
    Principal,
    Resource,
    TenantContext,
    utc_now,
)
from tenantguard.authz.enablement import EnablementLayer
from tenantguard.authz.vocabulary import DEFAULT_VOCABULARY, Action, ReasonCode, Vocabulary


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """Everything the resolver reads for one workspace, at one version."""
    workspace_id: uuid.UUID
    version: int
    catalog: CatalogStore
    enablement: EnablementLayer
    assignments: AssignmentStore
    catalog_epoch: int = 0


@dataclass(frozen=True)
class EffectivePermission:
    resource_code: str
    action: Action
    permission_id: uuid.UUID
    conditions: ConditionSet = ()


def effective_conditions(assignment: Assignment, permission: Permission) -> ConditionSet:
    """An assignment override replaces the permission's default template."""
    if assignment.conditions is not None:
        return assignment.conditions
    return permission.conditions


class Resolver:
    """
    Grant/deny resolution over a snapshot.

    Rules, first match wins: public bypass, enablement gate, permission
    existence, condition filtering, deny over grant, default deny. When
    `hierarchical_fallback` is on, a resource with no permission defined
    for the action borrows the nearest ancestor's.
    """

    def __init__(
        self,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        hierarchical_fallback: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.vocabulary = vocabulary
        self.hierarchical_fallback = hierarchical_fallback
        self.clock = clock

    def check(
        self,
        snapshot: WorkspaceSnapshot,
        principal: Optional[Principal],
        resource_code: str,
        action: Union[str, Action],
        tenant: TenantContext,
        ctx: Optional[EvalContext] = None,
    ) -> Decision:
        """
        Resolve one access check.

        Raises:
            ResourceNotFound: resource_code is not in the catalog
            CatalogIntegrityError: the ancestor walk hit a corrupt tree
        """
        resource = snapshot.catalog.get_resource(resource_code)
        return self.decide(snapshot, principal, resource, action, tenant, ctx)

    def decide(
        self,
        snapshot: WorkspaceSnapshot,
        principal: Optional[Principal],
        resource: Resource,
        action: Union[str, Action],
        tenant: TenantContext,
        ctx: Optional[EvalContext] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        if resource.is_public:
            return Decision.allow(ReasonCode.PUBLIC, resource_id=resource.id)

        if not snapshot.enablement.resource_enabled(resource, tenant):
            return Decision.deny(ReasonCode.DISABLED, resource_id=resource.id)

        parsed = self.vocabulary.parse_action(action)
        if parsed is None:
            return Decision.deny(ReasonCode.UNDEFINED_PERMISSION, resource_id=resource.id)

        owner, permission = self._locate_permission(snapshot.catalog, resource, parsed)
        via = owner.id if owner.id != resource.id else None
        if permission is None or not permission.is_active:
            return Decision.deny(ReasonCode.UNDEFINED_PERMISSION, resource_id=resource.id)

        ids = {"resource_id": resource.id, "permission_id": permission.id, "via_resource_id": via}
        if principal is None:
            return Decision.deny(ReasonCode.NO_GRANT, **ids)

        matching = self._matching_assignments(
            snapshot, principal, permission, tenant, ctx or EMPTY_EVAL_CONTEXT, now or self.clock()
        )
        if any(not a.is_granted for a in matching):
            return Decision.deny(ReasonCode.EXPLICIT_DENY, **ids)
        if any(a.is_granted for a in matching):
            return Decision.allow(ReasonCode.EXPLICIT_GRANT, **ids)
        return Decision.deny(ReasonCode.NO_GRANT, **ids)

    def _locate_permission(
        self,
        catalog: CatalogStore,
        resource: Resource,
        action: Action,
    ) -> tuple[Resource, Optional[Permission]]:
        permission = catalog.find_permission(resource.id, action)
        if permission is not None or not self.hierarchical_fallback:
            return resource, permission

        # Only a resource with no row at all for the action inherits
        for ancestor in reversed(catalog.get_ancestors(resource.id)):
            permission = catalog.find_permission(ancestor.id, action)
            if permission is not None:
                return ancestor, permission
        return resource, None

    def _matching_assignments(
        self,
        snapshot: WorkspaceSnapshot,
        principal: Principal,
        permission: Permission,
        tenant: TenantContext,
        ctx: EvalContext,
        now: datetime,
    ) -> list[Assignment]:
        role_ids = snapshot.assignments.roles_for(principal.user_id, tenant)
        if not role_ids:
            return []
        candidates = snapshot.assignments.find_assignments(
            role_ids, permission.id, tenant.workspace_id, now
        )
        return [
            a for a in candidates
            if conditions_satisfied(effective_conditions(a, permission), principal, tenant, ctx)
        ]

    # ========================================================================
    # Effective permissions
    # ========================================================================

    def effective_permissions(
        self,
        snapshot: WorkspaceSnapshot,
        principal: Principal,
        tenant: TenantContext,
        now: Optional[datetime] = None,
    ) -> list[EffectivePermission]:
        """
        List the permissions a principal can exercise in a tenant context.

        A permission is listed when its resource is enabled and the
        principal holds a live grant that no unconditional deny cancels.
        Conditions of the first such grant are attached, since the record
        facts are not known here. Public resources list every active
        permission unconditionally.
        """
        now = now or self.clock()
        catalog = snapshot.catalog
        role_ids = snapshot.assignments.roles_for(principal.user_id, tenant)
        result = []

        for resource in catalog.reachable_resources():
            code = catalog.qualified_code(resource)
            enabled = resource.is_public or snapshot.enablement.resource_enabled(resource, tenant)
            if not enabled:
                continue

            for permission in sorted(catalog.list_permissions(resource.id), key=lambda p: p.action.value):
                if not permission.is_active or permission.action not in self.vocabulary.actions:
                    continue
                if resource.is_public:
                    result.append(EffectivePermission(code, permission.action, permission.id))
                    continue

                candidates = snapshot.assignments.find_assignments(
                    role_ids, permission.id, tenant.workspace_id, now
                ) if role_ids else []
                if any(
                    not a.is_granted and not effective_conditions(a, permission)
                    for a in candidates
                ):
                    continue
                grants = [a for a in candidates if a.is_granted]
                if grants:
                    result.append(EffectivePermission(
                        code,
                        permission.action,
                        permission.id,
                        effective_conditions(grants[0], permission),
                    ))

        return result
