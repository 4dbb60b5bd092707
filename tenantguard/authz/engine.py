"""
Authorization engine.

Process-wide entry point tying the snapshot cache, the resolver and the
audit queue together. `check` is the hot path: it reads a cached
snapshot, resolves the decision and queues an access log entry. It fails
closed: anything other than an unknown resource code becomes a Deny.
"""

import asyncio
import uuid
from typing import Optional, Union

import structlog

from tenantguard.authz.audit import AuditLogger
from tenantguard.authz.cache import SnapshotCache
from tenantguard.authz.domain import (
    AccessLogEntry,
    Decision,
    EvalContext,
    Principal,
    TenantContext,
)
from tenantguard.authz.errors import ResourceNotFound
from tenantguard.authz.ports import CATALOG_SCOPE, AuditSink, PersistencePort, VersionStore
from tenantguard.authz.resolver import EffectivePermission, Resolver
from tenantguard.authz.vocabulary import Action, ReasonCode

logger = structlog.get_logger(__name__)


class AuthorizationEngine:
    """
    Cached, audited access checks.

    Usage:
        engine = AuthorizationEngine(SqlPersistence(factory), audit=AuditLogger(sink))
        await engine.start()
        decision = await engine.check(principal, "hr.employees", "view", tenant)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        persistence: PersistencePort,
        resolver: Optional[Resolver] = None,
        audit: Optional[AuditLogger] = None,
        version_store: Optional[VersionStore] = None,
        poll_interval: float = 0.0,
        max_depth: int = 32,
    ):
        self.resolver = resolver or Resolver()
        self.cache = SnapshotCache(persistence, vocabulary=self.resolver.vocabulary, max_depth=max_depth)
        self.audit = audit
        self.version_store = version_store
        self.poll_interval = poll_interval
        self._poller: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings,
        persistence: PersistencePort,
        audit_sink: Optional[AuditSink] = None,
        version_store: Optional[VersionStore] = None,
    ) -> "AuthorizationEngine":
        """
        Build an engine from the `authz` settings section.

        Args:
            settings: Application Settings
            persistence: Snapshot loader
            audit_sink: Sink for access log entries (None disables auditing)
            version_store: Shared version store for cross-process invalidation
        """
        authz = settings.authz
        audit = None
        if audit_sink is not None:
            audit = AuditLogger(
                audit_sink,
                queue_size=authz.audit_queue_size,
                overflow_policy=authz.audit_overflow_policy,
                block_timeout=authz.audit_block_timeout,
            )
        return cls(
            persistence,
            resolver=Resolver(
                vocabulary=authz.vocabulary,
                hierarchical_fallback=authz.hierarchical_fallback,
            ),
            audit=audit,
            version_store=version_store,
            poll_interval=authz.version_poll_interval,
            max_depth=authz.max_resource_depth,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        if self.audit is not None:
            await self.audit.start()
        if self.version_store is not None and self.poll_interval > 0 and self._poller is None:
            await self.sync_versions()
            self._poller = asyncio.create_task(self._poll_versions())

    async def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        if self.audit is not None:
            await self.audit.stop()

    # ========================================================================
    # Consistency
    # ========================================================================

    def invalidate(self, workspace_id: uuid.UUID) -> int:
        """Mark a workspace stale; its next check reloads the snapshot."""
        return self.cache.invalidate(workspace_id)

    def invalidate_all(self) -> int:
        """Mark every workspace stale after a catalog-wide mutation."""
        return self.cache.invalidate_all()

    async def sync_versions(self) -> list[uuid.UUID]:
        """Pull persisted versions and invalidate workspaces changed elsewhere."""
        if self.version_store is None:
            return []
        keys = [CATALOG_SCOPE, *self.cache.workspaces()]
        persisted = await self.version_store.get_versions(keys)
        return self.cache.sync_versions(persisted)

    async def _poll_versions(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.sync_versions()
            except Exception:
                logger.warning("version_sync_failed", exc_info=True)

    # ========================================================================
    # Checks
    # ========================================================================

    async def check(
        self,
        principal: Optional[Principal],
        resource_code: str,
        action: Union[str, Action],
        tenant: TenantContext,
        ctx: Optional[EvalContext] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Decision:
        """
        Decide whether principal may perform action on resource_code.

        Args:
            principal: Caller (None for anonymous; only public resources allow)
            resource_code: Qualified code, `<module>.<resource>`
            action: Action name
            tenant: Workspace and optional company the check runs in
            ctx: Facts about the record being accessed

        Returns:
            Decision with its reason code

        Raises:
            ResourceNotFound: resource_code is not in the catalog
        """
        resource_id = None
        try:
            snapshot = await self.cache.get(tenant.workspace_id)
            resource = snapshot.catalog.get_resource(resource_code)
            resource_id = resource.id
            decision = self.resolver.decide(snapshot, principal, resource, action, tenant, ctx)
        except ResourceNotFound:
            logger.warning(
                "resource_not_found",
                resource_code=resource_code,
                workspace_id=str(tenant.workspace_id),
            )
            raise
        except Exception:
            logger.exception(
                "access_check_failed",
                resource_code=resource_code,
                action=str(getattr(action, "value", action)),
                workspace_id=str(tenant.workspace_id),
            )
            decision = Decision.deny(ReasonCode.INTERNAL_ERROR, resource_id=resource_id)

        await self._record(
            decision,
            principal,
            resource_code,
            action,
            tenant,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return decision

    async def _record(
        self,
        decision: Decision,
        principal: Optional[Principal],
        resource_code: str,
        action: Union[str, Action],
        tenant: TenantContext,
        **metadata: Optional[str],
    ) -> None:
        if self.audit is None:
            return
        entry = AccessLogEntry(
            principal_id=principal.user_id if principal else None,
            workspace_id=tenant.workspace_id,
            company_id=tenant.company_id,
            resource_code=resource_code,
            resource_id=decision.resource_id,
            action=str(getattr(action, "value", action)),
            outcome=decision.outcome,
            reason=decision.reason,
            **metadata,
        )
        await self.audit.submit(entry)

    async def effective_permissions(
        self,
        principal: Principal,
        tenant: TenantContext,
    ) -> list[EffectivePermission]:
        """Permissions the principal can exercise in the tenant context."""
        snapshot = await self.cache.get(tenant.workspace_id)
        return self.resolver.effective_permissions(snapshot, principal, tenant)
