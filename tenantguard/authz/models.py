"""
Authorization database models.

Tables behind the persistence port: catalog (modules, resources,
permissions), roles and user bindings, role/permission assignments,
enablement rows, the access log and per-workspace cache versions.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tenantguard.authz import domain
from tenantguard.authz.conditions import decode_conditions
from tenantguard.authz.domain import as_utc
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
from tenantguard.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Module(Base):
    """
    Platform module definition.

    Codes are unique among live modules; the catalog enforces it so a
    deleted module's code can be reused.
    """
    __tablename__ = "authz_modules"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    category: Mapped[ModuleCategory] = mapped_column(
        Enum(ModuleCategory),
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    is_core: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    lifecycle: Mapped[Lifecycle] = mapped_column(
        Enum(Lifecycle),
        default=Lifecycle.ACTIVE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def to_domain(self) -> domain.Module:
        return domain.Module(
            id=self.id,
            code=self.code,
            category=self.category,
            name=self.name,
            is_active=self.is_active,
            is_core=self.is_core,
            sort_order=self.sort_order,
            lifecycle=self.lifecycle,
        )


class Resource(Base):
    """
    Protectable unit inside a module.

    Resources nest through parent_id; the parent must live in the same
    module.
    """
    __tablename__ = "authz_resources"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    module_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("authz_modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("authz_resources.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    code: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    resource_type: Mapped[ResourceType] = mapped_column(
        Enum(ResourceType),
        nullable=False,
    )

    is_public: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    requires_approval: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    lifecycle: Mapped[Lifecycle] = mapped_column(
        Enum(Lifecycle),
        default=Lifecycle.ACTIVE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_authz_resources_module_code", "module_id", "code"),
    )

    def to_domain(self) -> domain.Resource:
        return domain.Resource(
            id=self.id,
            module_id=self.module_id,
            code=self.code,
            resource_type=self.resource_type,
            parent_id=self.parent_id,
            name=self.name,
            is_public=self.is_public,
            requires_approval=self.requires_approval,
            is_active=self.is_active,
            sort_order=self.sort_order,
            lifecycle=self.lifecycle,
        )


class Permission(Base):
    """An action defined on a resource, with its default condition template."""
    __tablename__ = "authz_permissions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    resource_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("authz_resources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    action: Mapped[Action] = mapped_column(
        Enum(Action),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    conditions: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("resource_id", "action", name="uq_authz_permissions_resource_action"),
    )

    def to_domain(self) -> domain.Permission:
        return domain.Permission(
            id=self.id,
            resource_id=self.resource_id,
            action=self.action,
            conditions=decode_conditions(self.conditions),
            name=self.name,
            is_active=self.is_active,
        )


class Role(Base):
    """
    Role definition.

    Exactly one scope: system-wide, one workspace or one company.
    """
    __tablename__ = "authz_roles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    scope: Mapped[RoleScope] = mapped_column(
        Enum(RoleScope),
        nullable=False,
    )

    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    lifecycle: Mapped[Lifecycle] = mapped_column(
        Enum(Lifecycle),
        default=Lifecycle.ACTIVE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def to_domain(self) -> domain.Role:
        return domain.Role(
            id=self.id,
            code=self.code,
            scope=self.scope,
            workspace_id=self.workspace_id,
            company_id=self.company_id,
            name=self.name,
            is_active=self.is_active,
            sort_order=self.sort_order,
            lifecycle=self.lifecycle,
        )


class UserRole(Base):
    """
    User-Role binding with workspace isolation.

    company_id limits the binding to one company inside the workspace.
    """
    __tablename__ = "authz_user_roles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    role_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("authz_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_authz_user_roles_workspace_user", "workspace_id", "user_id"),
    )

    def to_domain(self) -> domain.RoleBinding:
        return domain.RoleBinding(
            user_id=self.user_id,
            role_id=self.role_id,
            workspace_id=self.workspace_id,
            company_id=self.company_id,
            is_active=self.is_active,
        )


class RoleModulePermission(Base):
    """
    Grant (is_granted=True) or explicit deny of a permission to a role in
    one workspace, optionally expiring and with a condition override.
    """
    __tablename__ = "authz_role_module_permissions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    role_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("authz_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    permission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("authz_permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    is_granted: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    conditions: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
    )

    granted_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "role_id", "permission_id", "workspace_id", "is_granted",
            name="uq_authz_role_module_permissions",
        ),
    )

    def to_domain(self) -> domain.Assignment:
        return domain.Assignment(
            id=self.id,
            role_id=self.role_id,
            permission_id=self.permission_id,
            workspace_id=self.workspace_id,
            is_granted=self.is_granted,
            granted_by=self.granted_by,
            granted_at=as_utc(self.granted_at),
            expires_at=as_utc(self.expires_at),
            # An empty override still replaces the template
            conditions=decode_conditions(self.conditions) if self.conditions is not None else None,
        )


class Enablement(Base):
    """
    Tenant-level enable/disable switch for a module or resource.

    company_id NULL is the workspace default; a company row overrides it.
    """
    __tablename__ = "authz_enablement"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    target: Mapped[EnablementTarget] = mapped_column(
        Enum(EnablementTarget),
        nullable=False,
    )

    target_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
    )

    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_authz_enablement_target", "workspace_id", "target", "target_id"),
    )

    def to_domain(self) -> domain.EnablementRow:
        return domain.EnablementRow(
            target=self.target,
            target_id=self.target_id,
            workspace_id=self.workspace_id,
            is_enabled=self.is_enabled,
            company_id=self.company_id,
            toggled_by=self.updated_by,
        )


class AccessLog(Base):
    """
    Append-only record of resolved access checks.

    Never updated or deleted by the application; retention is external.
    """
    __tablename__ = "authz_access_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    principal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    resource_code: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    resource_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    outcome: Mapped[Outcome] = mapped_column(
        Enum(Outcome),
        nullable=False,
    )

    reason: Mapped[ReasonCode] = mapped_column(
        Enum(ReasonCode),
        nullable=False,
    )

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),
        nullable=True,
    )

    user_agent: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    request_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_authz_access_logs_workspace_created", "workspace_id", "created_at"),
    )

    @classmethod
    def from_domain(cls, entry: domain.AccessLogEntry) -> "AccessLog":
        return cls(
            id=entry.id,
            workspace_id=entry.workspace_id,
            company_id=entry.company_id,
            principal_id=entry.principal_id,
            resource_code=entry.resource_code,
            resource_id=entry.resource_id,
            action=entry.action,
            outcome=entry.outcome,
            reason=entry.reason,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            request_id=entry.request_id,
            created_at=entry.timestamp,
        )

    def to_domain(self) -> domain.AccessLogEntry:
        return domain.AccessLogEntry(
            id=self.id,
            principal_id=self.principal_id,
            workspace_id=self.workspace_id,
            company_id=self.company_id,
            resource_code=self.resource_code,
            resource_id=self.resource_id,
            action=self.action,
            outcome=self.outcome,
            reason=self.reason,
            timestamp=as_utc(self.created_at),
            request_id=self.request_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


class PolicyCacheVersion(Base):
    """
    Policy cache version for invalidation.

    Used to coordinate cache invalidation across multiple instances. The
    all-zero workspace id carries the catalog-wide version.
    """
    __tablename__ = "authz_policy_cache_version"

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
