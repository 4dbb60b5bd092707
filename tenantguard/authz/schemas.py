"""
Pydantic schemas for authorization.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tenantguard.authz.conditions import encode_conditions
from tenantguard.authz.domain import AccessLogEntry, Decision
from tenantguard.authz.resolver import EffectivePermission
from tenantguard.authz.vocabulary import (
    REASON_CODES_VERSION,
    Action,
    EnablementTarget,
    ModuleCategory,
    Outcome,
    ReasonCode,
    ResourceType,
)


# ============================================================================
# Condition Schemas
# ============================================================================


class ConditionsSchema(BaseModel):
    """Condition template or override blob."""
    model_config = ConfigDict(populate_by_name=True)

    scope: Optional[Literal["own", "department", "company", "workspace"]] = None
    fields: Optional[list[str]] = None
    departments: Optional[list[str]] = None
    companies: Optional[list[str]] = None
    custom_conditions: Optional[dict[str, Any]] = Field(None, alias="customConditions")

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# Catalog Schemas
# ============================================================================


class ModuleCreate(BaseModel):
    """Schema for creating a module."""
    code: str = Field(..., min_length=1, max_length=50, pattern=r"^[^.]+$")
    category: ModuleCategory
    name: str = Field("", max_length=100)
    is_core: bool = False
    is_active: bool = True
    sort_order: int = 0


class ResourceCreate(BaseModel):
    """Schema for creating a resource."""
    module_id: UUID
    code: str = Field(..., min_length=1, max_length=100)
    resource_type: ResourceType
    parent_id: Optional[UUID] = None
    name: str = Field("", max_length=100)
    is_public: bool = False
    requires_approval: bool = False
    is_active: bool = True
    sort_order: int = 0


class PermissionCreate(BaseModel):
    """Schema for defining an action on a resource."""
    resource_id: UUID
    action: Action
    conditions: Optional[ConditionsSchema] = None
    name: str = Field("", max_length=200)
    is_active: bool = True


# ============================================================================
# Role & Assignment Schemas
# ============================================================================


class RoleCreate(BaseModel):
    """Schema for creating a role; exactly one scope must be given."""
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field("", max_length=100)
    is_system: bool = False
    workspace_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    is_active: bool = True
    sort_order: int = 0

    @model_validator(mode="after")
    def check_scope(self) -> "RoleCreate":
        scopes = [self.is_system, self.workspace_id is not None, self.company_id is not None]
        if sum(scopes) != 1:
            raise ValueError("exactly one of is_system, workspace_id, company_id is required")
        return self


class RoleBindingCreate(BaseModel):
    """Schema for giving a user a role in a workspace."""
    user_id: UUID
    role_id: UUID
    workspace_id: UUID
    company_id: Optional[UUID] = None


class AssignmentCreate(BaseModel):
    """Schema for granting or denying a permission to a role."""
    role_id: UUID
    permission_id: UUID
    workspace_id: UUID
    is_granted: bool = True
    expires_at: Optional[datetime] = None
    conditions: Optional[ConditionsSchema] = None


class EnablementUpdate(BaseModel):
    """Schema for switching a module or resource for a tenant."""
    target: EnablementTarget
    target_id: UUID
    workspace_id: UUID
    company_id: Optional[UUID] = None
    is_enabled: bool


# ============================================================================
# Decision Schemas
# ============================================================================


class DecisionResponse(BaseModel):
    """Outcome of an access check."""
    outcome: Outcome
    reason: ReasonCode
    allowed: bool
    resource_id: Optional[UUID] = None
    permission_id: Optional[UUID] = None
    via_resource_id: Optional[UUID] = None
    reason_codes_version: int = REASON_CODES_VERSION

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(
            outcome=decision.outcome,
            reason=decision.reason,
            allowed=decision.allowed,
            resource_id=decision.resource_id,
            permission_id=decision.permission_id,
            via_resource_id=decision.via_resource_id,
        )


class EffectivePermissionResponse(BaseModel):
    """One permission the user can exercise, with its conditions."""
    key: str
    resource_code: str
    action: Action
    permission_id: UUID
    conditions: Optional[dict[str, Any]] = None

    @classmethod
    def from_effective(cls, item: EffectivePermission) -> "EffectivePermissionResponse":
        return cls(
            key=f"{item.resource_code}.{item.action.value}",
            resource_code=item.resource_code,
            action=item.action,
            permission_id=item.permission_id,
            conditions=encode_conditions(item.conditions),
        )


class EffectivePermissionsResponse(BaseModel):
    """Effective permissions in flat and map shape."""
    user_id: UUID
    workspace_id: UUID
    company_id: Optional[UUID] = None
    items: list[EffectivePermissionResponse]
    permissions: dict[str, bool]

    @classmethod
    def build(
        cls,
        user_id: UUID,
        workspace_id: UUID,
        company_id: Optional[UUID],
        items: list[EffectivePermission],
    ) -> "EffectivePermissionsResponse":
        flat = [EffectivePermissionResponse.from_effective(i) for i in items]
        return cls(
            user_id=user_id,
            workspace_id=workspace_id,
            company_id=company_id,
            items=flat,
            permissions={item.key: True for item in flat},
        )


# ============================================================================
# Access Log Schemas
# ============================================================================


class AccessLogFilter(BaseModel):
    """Access log filter parameters."""
    principal_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    resource_code: Optional[str] = None
    action: Optional[str] = None
    outcome: Optional[Outcome] = None
    reason: Optional[ReasonCode] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AccessLogResponse(BaseModel):
    """Access log entry response."""
    id: UUID
    principal_id: Optional[UUID] = None
    workspace_id: UUID
    company_id: Optional[UUID] = None
    resource_code: str
    resource_id: Optional[UUID] = None
    action: str
    outcome: Outcome
    reason: ReasonCode
    timestamp: datetime
    request_id: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: AccessLogEntry) -> "AccessLogResponse":
        return cls(
            id=entry.id,
            principal_id=entry.principal_id,
            workspace_id=entry.workspace_id,
            company_id=entry.company_id,
            resource_code=entry.resource_code,
            resource_id=entry.resource_id,
            action=entry.action,
            outcome=entry.outcome,
            reason=entry.reason,
            timestamp=entry.timestamp,
            request_id=entry.request_id,
            ip_address=entry.ip_address,
        )


class AccessLogListResponse(BaseModel):
    """Access log list response."""
    items: list[AccessLogResponse]
    total: int
