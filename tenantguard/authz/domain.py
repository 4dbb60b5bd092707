"""
Access-control entities.

Rows are loaded from storage into these immutable records once per
workspace snapshot; the resolver only ever sees these types.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from tenantguard.authz.conditions import UNCONDITIONAL, ConditionSet
from tenantguard.authz.vocabulary import (
    Action,
    EnablementTarget,
    Lifecycle,
    ModuleCategory,
    Outcome,
    ReasonCode,
    ResourceType,
    RoleScope,
)

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (some drivers drop the offset)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ============================================================================
# Catalog
# ============================================================================


@dataclass(frozen=True)
class Module:
    id: uuid.UUID
    code: str
    category: ModuleCategory
    name: str = ""
    is_active: bool = True
    is_core: bool = False
    sort_order: int = 0
    lifecycle: Lifecycle = Lifecycle.ACTIVE

    @property
    def is_live(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE


@dataclass(frozen=True)
class Resource:
    """
    A protectable unit inside a module.

    `code` is unique within the module; the catalog addresses resources by
    their qualified code, `<module code>.<resource code>`.
    """
    id: uuid.UUID
    module_id: uuid.UUID
    code: str
    resource_type: ResourceType
    parent_id: Optional[uuid.UUID] = None
    name: str = ""
    is_public: bool = False
    requires_approval: bool = False
    is_active: bool = True
    sort_order: int = 0
    lifecycle: Lifecycle = Lifecycle.ACTIVE

    @property
    def is_live(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE


@dataclass(frozen=True)
class Permission:
    """An action defined on a resource with its default condition template."""
    id: uuid.UUID
    resource_id: uuid.UUID
    action: Action
    conditions: ConditionSet = UNCONDITIONAL
    name: str = ""
    is_active: bool = True


# ============================================================================
# Roles & Assignments
# ============================================================================


@dataclass(frozen=True)
class Role:
    id: uuid.UUID
    code: str
    scope: RoleScope
    workspace_id: Optional[uuid.UUID] = None
    company_id: Optional[uuid.UUID] = None
    name: str = ""
    is_active: bool = True
    sort_order: int = 0
    lifecycle: Lifecycle = Lifecycle.ACTIVE

    @property
    def is_system(self) -> bool:
        return self.scope is RoleScope.SYSTEM

    @property
    def is_live(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE


@dataclass(frozen=True)
class RoleBinding:
    """A role held by a user inside a workspace, optionally limited to one company."""
    user_id: uuid.UUID
    role_id: uuid.UUID
    workspace_id: uuid.UUID
    company_id: Optional[uuid.UUID] = None
    is_active: bool = True


@dataclass(frozen=True)
class Assignment:
    """
    A grant (is_granted=True) or explicit deny of one permission to one
    role inside one workspace.

    `conditions` is None when the permission's default template applies.
    """
    id: uuid.UUID
    role_id: uuid.UUID
    permission_id: uuid.UUID
    workspace_id: uuid.UUID
    is_granted: bool
    granted_by: Optional[uuid.UUID] = None
    granted_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    conditions: Optional[ConditionSet] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) <= now


# ============================================================================
# Enablement
# ============================================================================


@dataclass(frozen=True)
class EnablementRow:
    """
    Per-tenant switch for a module or resource.

    company_id None is the workspace-wide default; a company row overrides
    it for that company only.
    """
    target: EnablementTarget
    target_id: uuid.UUID
    workspace_id: uuid.UUID
    is_enabled: bool
    company_id: Optional[uuid.UUID] = None
    toggled_by: Optional[uuid.UUID] = None


# ============================================================================
# Check inputs & outputs
# ============================================================================


@dataclass(frozen=True)
class Principal:
    user_id: uuid.UUID
    department_id: Optional[Any] = None


@dataclass(frozen=True)
class TenantContext:
    workspace_id: uuid.UUID
    company_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class EvalContext:
    """
    Facts about the record being accessed.

    owner_id, department_id, company_id and workspace_id describe the
    record; fields lists the fields the caller touches; attributes feed
    custom condition matches.
    """
    owner_id: Optional[Any] = None
    department_id: Optional[Any] = None
    company_id: Optional[Any] = None
    workspace_id: Optional[Any] = None
    fields: frozenset[str] = frozenset()
    attributes: Mapping[str, Any] = field(default_factory=dict)


EMPTY_EVAL_CONTEXT = EvalContext()


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: ReasonCode
    resource_id: Optional[uuid.UUID] = None
    permission_id: Optional[uuid.UUID] = None
    # Set when the permission was inherited from an ancestor resource
    via_resource_id: Optional[uuid.UUID] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    @classmethod
    def allow(cls, reason: ReasonCode, **kwargs: Any) -> "Decision":
        return cls(Outcome.ALLOW, reason, **kwargs)

    @classmethod
    def deny(cls, reason: ReasonCode, **kwargs: Any) -> "Decision":
        return cls(Outcome.DENY, reason, **kwargs)


@dataclass(frozen=True)
class AccessLogEntry:
    """Immutable record of one resolved decision."""
    principal_id: Optional[uuid.UUID]
    workspace_id: uuid.UUID
    resource_code: str
    action: str
    outcome: Outcome
    reason: ReasonCode
    company_id: Optional[uuid.UUID] = None
    resource_id: Optional[uuid.UUID] = None
    timestamp: datetime = field(default_factory=utc_now)
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "principal_id": str(self.principal_id) if self.principal_id else None,
            "workspace_id": str(self.workspace_id),
            "company_id": str(self.company_id) if self.company_id else None,
            "resource_code": self.resource_code,
            "resource_id": str(self.resource_id) if self.resource_id else None,
            "action": self.action,
            "outcome": self.outcome.value,
            "reason": self.reason.value,
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
        }
