"""
Catalog Cache / Consistency Manager.

Keeps one immutable WorkspaceSnapshot per workspace together with the
version it was built at. Every mutation bumps the workspace version (or
the catalog epoch, for catalog-wide changes); a read whose snapshot is
behind the current version reloads it. Refreshes are single-flight per
workspace and workspaces never wait on each other.
"""

import asyncio
import time
import uuid
from typing import Mapping, Optional

import structlog

from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.catalog import DEFAULT_MAX_DEPTH, CatalogStore
from tenantguard.authz.enablement import EnablementLayer
from tenantguard.authz.ports import CATALOG_SCOPE, PersistencePort
from tenantguard.authz.resolver import WorkspaceSnapshot
from tenantguard.authz.vocabulary import DEFAULT_VOCABULARY, Vocabulary

logger = structlog.get_logger(__name__)


class SnapshotCache:
    """Versioned per-workspace snapshots loaded through a persistence port."""

    def __init__(
        self,
        persistence: PersistencePort,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.persistence = persistence
        self.vocabulary = vocabulary
        self.max_depth = max_depth
        self._snapshots: dict[uuid.UUID, WorkspaceSnapshot] = {}
        self._versions: dict[uuid.UUID, int] = {}
        self._epoch = 0
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        # Last persisted versions seen by sync_versions
        self._remote: dict[uuid.UUID, int] = {}

    # ========================================================================
    # Versions
    # ========================================================================

    def version(self, workspace_id: uuid.UUID) -> int:
        return self._versions.get(workspace_id, 0)

    @property
    def catalog_epoch(self) -> int:
        return self._epoch

    def workspaces(self) -> list[uuid.UUID]:
        return list(self._snapshots)

    def is_fresh(self, snapshot: Optional[WorkspaceSnapshot]) -> bool:
        return (
            snapshot is not None
            and snapshot.version == self.version(snapshot.workspace_id)
            and snapshot.catalog_epoch == self._epoch
        )

    def invalidate(self, workspace_id: uuid.UUID) -> int:
        """Bump the workspace version; the next read reloads its snapshot."""
        version = self.version(workspace_id) + 1
        self._versions[workspace_id] = version
        logger.info("workspace_invalidated", workspace_id=str(workspace_id), version=version)
        return version

    def invalidate_all(self) -> int:
        """Bump the catalog epoch; every workspace reloads on its next read."""
        self._epoch += 1
        logger.info("catalog_invalidated", epoch=self._epoch)
        return self._epoch

    def sync_versions(self, persisted: Mapping[uuid.UUID, int]) -> list[uuid.UUID]:
        """
        Invalidate workspaces whose persisted version moved since the last sync.

        Args:
            persisted: Versions read from the shared version store. The
                CATALOG_SCOPE key carries the catalog epoch.

        Returns:
            Workspace ids (or CATALOG_SCOPE) that were invalidated
        """
        changed = []
        for key, version in persisted.items():
            seen = self._remote.get(key)
            self._remote[key] = version
            if seen is None or seen == version:
                continue
            if key == CATALOG_SCOPE:
                self.invalidate_all()
            else:
                self.invalidate(key)
            changed.append(key)
        return changed

    # ========================================================================
    # Reads
    # ========================================================================

    def peek(self, workspace_id: uuid.UUID) -> Optional[WorkspaceSnapshot]:
        """Return the cached snapshot when it is current, without loading."""
        snapshot = self._snapshots.get(workspace_id)
        return snapshot if self.is_fresh(snapshot) else None

    async def get(self, workspace_id: uuid.UUID) -> WorkspaceSnapshot:
        """
        Return a current snapshot, refreshing it on version mismatch.

        Concurrent misses for one workspace share a single load.
        """
        snapshot = self.peek(workspace_id)
        if snapshot is not None:
            return snapshot

        lock = self._locks.setdefault(workspace_id, asyncio.Lock())
        async with lock:
            snapshot = self.peek(workspace_id)
            if snapshot is not None:
                return snapshot
            return await self._refresh(workspace_id)

    async def _refresh(self, workspace_id: uuid.UUID) -> WorkspaceSnapshot:
        # Captured before loading so a mutation during the load forces another one
        version = self.version(workspace_id)
        epoch = self._epoch
        started = time.perf_counter()

        try:
            catalog_rows = await self.persistence.load_catalog(workspace_id)
            enablement_rows = await self.persistence.load_enablement(workspace_id)
            assignment_rows = await self.persistence.load_assignments(workspace_id)
        except Exception:
            logger.exception("snapshot_refresh_failed", workspace_id=str(workspace_id))
            raise

        catalog = CatalogStore.from_rows(
            *catalog_rows,
            vocabulary=self.vocabulary,
            max_depth=self.max_depth,
        )
        snapshot = WorkspaceSnapshot(
            workspace_id=workspace_id,
            version=version,
            catalog=catalog,
            enablement=EnablementLayer(catalog, enablement_rows),
            assignments=AssignmentStore.from_rows(*assignment_rows),
            catalog_epoch=epoch,
        )
        self._snapshots[workspace_id] = snapshot

        logger.info(
            "snapshot_refreshed",
            workspace_id=str(workspace_id),
            version=version,
            epoch=epoch,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return snapshot

    def evict(self, workspace_id: uuid.UUID) -> None:
        self._snapshots.pop(workspace_id, None)
