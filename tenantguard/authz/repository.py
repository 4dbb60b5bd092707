"""
SQLAlchemy adapters for the engine ports.

SqlPersistence loads workspace snapshots, SqlVersionStore keeps the
per-workspace versions other processes poll, and SqlAuditSink appends
access log rows.
"""

import uuid
from typing import Iterable, Optional, Tuple

import structlog
from redis.asyncio import Redis
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.authz.domain import AccessLogEntry, EnablementRow
from tenantguard.authz.models import (
    AccessLog,
    Enablement,
    Module,
    Permission,
    PolicyCacheVersion,
    Resource,
    Role,
    RoleModulePermission,
    UserRole,
)
from tenantguard.authz.ports import AssignmentRows, CatalogRows
from tenantguard.authz.schemas import AccessLogFilter
from tenantguard.authz.vocabulary import RoleScope

logger = structlog.get_logger(__name__)


# ============================================================================
# Row loaders
# ============================================================================


async def fetch_catalog_rows(session: AsyncSession) -> CatalogRows:
    """
    Load the platform-wide catalog.

    Tombstones are included so ancestor walks can tell a deleted parent
    from a dangling one.
    """
    modules = (await session.execute(select(Module))).scalars().all()
    resources = (await session.execute(select(Resource))).scalars().all()
    permissions = (await session.execute(select(Permission))).scalars().all()
    return CatalogRows(
        modules=[m.to_domain() for m in modules],
        resources=[r.to_domain() for r in resources],
        permissions=[p.to_domain() for p in permissions],
    )


async def fetch_enablement_rows(session: AsyncSession, workspace_id: uuid.UUID) -> list[EnablementRow]:
    result = await session.execute(
        select(Enablement).where(Enablement.workspace_id == workspace_id)
    )
    return [row.to_domain() for row in result.scalars().all()]


async def fetch_assignment_rows(
    session: AsyncSession,
    workspace_id: uuid.UUID,
    all_roles: bool = False,
) -> AssignmentRows:
    """
    Load roles, bindings and assignments for a workspace.

    Only roles that can matter in the workspace are loaded (system roles,
    its own roles and roles bound inside it) unless all_roles is set.
    """
    role_query = select(Role)
    if not all_roles:
        bound_roles = select(UserRole.role_id).where(UserRole.workspace_id == workspace_id)
        role_query = role_query.where(
            or_(
                Role.scope == RoleScope.SYSTEM,
                Role.workspace_id == workspace_id,
                Role.id.in_(bound_roles),
            )
        )
    roles = await session.execute(role_query)
    bindings = await session.execute(
        select(UserRole).where(UserRole.workspace_id == workspace_id)
    )
    assignments = await session.execute(
        select(RoleModulePermission).where(RoleModulePermission.workspace_id == workspace_id)
    )
    return AssignmentRows(
        roles=[r.to_domain() for r in roles.scalars().all()],
        bindings=[b.to_domain() for b in bindings.scalars().all()],
        assignments=[a.to_domain() for a in assignments.scalars().all()],
    )


class SqlPersistence:
    """Snapshot loaders over the authorization tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_catalog(self, workspace_id: uuid.UUID) -> CatalogRows:
        async with self.session_factory() as session:
            return await fetch_catalog_rows(session)

    async def load_enablement(self, workspace_id: uuid.UUID) -> list[EnablementRow]:
        async with self.session_factory() as session:
            return await fetch_enablement_rows(session, workspace_id)

    async def load_assignments(self, workspace_id: uuid.UUID) -> AssignmentRows:
        async with self.session_factory() as session:
            return await fetch_assignment_rows(session, workspace_id)


class SqlVersionStore:
    """
    Per-workspace versions in `authz_policy_cache_version`, mirrored in
    Redis when a client is given.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Optional[Redis] = None,
        prefix: str = "authz:version:",
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.prefix = prefix

    def _version_key(self, workspace_id: uuid.UUID) -> str:
        return f"{self.prefix}{workspace_id}"

    async def get_versions(self, workspace_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        """Current versions; workspaces never bumped are omitted."""
        wanted = list(dict.fromkeys(workspace_ids))
        if not wanted:
            return {}

        versions: dict[uuid.UUID, int] = {}
        if self.redis:
            cached = await self.redis.mget([self._version_key(ws) for ws in wanted])
            for ws, value in zip(wanted, cached):
                if value is not None:
                    versions[ws] = int(value)

        missing = [ws for ws in wanted if ws not in versions]
        if missing:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(PolicyCacheVersion).where(PolicyCacheVersion.workspace_id.in_(missing))
                )
                for row in result.scalars().all():
                    versions[row.workspace_id] = row.version
        return versions

    async def bump(self, workspace_id: uuid.UUID) -> int:
        """Increment the persisted version, creating the row on first use."""
        async with self.session_factory() as session:
            new_version = await self._increment(session, workspace_id)

        if self.redis:
            await self.redis.set(self._version_key(workspace_id), new_version)
        logger.debug("cache_version_bumped", workspace_id=str(workspace_id), version=new_version)
        return new_version

    async def _increment(self, session: AsyncSession, workspace_id: uuid.UUID) -> int:
        result = await session.execute(
            update(PolicyCacheVersion)
            .where(PolicyCacheVersion.workspace_id == workspace_id)
            .values(version=PolicyCacheVersion.version + 1)
            .returning(PolicyCacheVersion.version)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            await session.commit()
            return row

        session.add(PolicyCacheVersion(workspace_id=workspace_id, version=1))
        try:
            await session.commit()
        except IntegrityError:
            # Another writer created the row first
            await session.rollback()
            return await self._increment(session, workspace_id)
        return 1


class SqlAuditSink:
    """Appends access log entries to `authz_access_logs`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, entry: AccessLogEntry) -> None:
        async with self.session_factory() as session:
            session.add(AccessLog.from_domain(entry))
            await session.commit()


async def list_access_logs(
    session: AsyncSession,
    workspace_id: uuid.UUID,
    filter_params: Optional[AccessLogFilter] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list[AccessLogEntry], int]:
    """
    Get access log entries for a workspace, newest first.

    Returns:
        (entries, total matching count)
    """
    query = select(AccessLog).where(AccessLog.workspace_id == workspace_id)

    if filter_params:
        if filter_params.principal_id:
            query = query.where(AccessLog.principal_id == filter_params.principal_id)
        if filter_params.company_id:
            query = query.where(AccessLog.company_id == filter_params.company_id)
        if filter_params.resource_code:
            query = query.where(AccessLog.resource_code == filter_params.resource_code)
        if filter_params.action:
            query = query.where(AccessLog.action == filter_params.action)
        if filter_params.outcome:
            query = query.where(AccessLog.outcome == filter_params.outcome)
        if filter_params.reason:
            query = query.where(AccessLog.reason == filter_params.reason)
        if filter_params.start_date:
            query = query.where(AccessLog.created_at >= filter_params.start_date)
        if filter_params.end_date:
            query = query.where(AccessLog.created_at <= filter_params.end_date)

    count_result = await session.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar()

    query = query.order_by(AccessLog.created_at.desc(), AccessLog.id).limit(limit).offset(offset)
    result = await session.execute(query)

    return [row.to_domain() for row in result.scalars().all()], total
