"""
Collaborator contracts for the engine.

The cache reads snapshots through a PersistencePort, decisions leave
through an AuditSink, and cross-process invalidation goes through a
VersionStore. In-memory implementations live here; SQLAlchemy ones live
in `tenantguard.authz.repository`.
"""

import uuid
from typing import Iterable, NamedTuple, Optional, Protocol

from tenantguard.authz.assignments import AssignmentStore
from tenantguard.authz.catalog import CatalogStore
from tenantguard.authz.domain import (
    AccessLogEntry,
    Assignment,
    EnablementRow,
    Module,
    Permission,
    Resource,
    Role,
    RoleBinding,
)

# Version key for catalog-wide mutations (modules, resources, permissions)
CATALOG_SCOPE = uuid.UUID(int=0)


class CatalogRows(NamedTuple):
    modules: list[Module]
    resources: list[Resource]
    permissions: list[Permission]


class AssignmentRows(NamedTuple):
    roles: list[Role]
    bindings: list[RoleBinding]
    assignments: list[Assignment]


class PersistencePort(Protocol):
    """Read-only snapshot loaders called on cache refresh."""

    async def load_catalog(self, workspace_id: uuid.UUID) -> CatalogRows:
        ...

    async def load_enablement(self, workspace_id: uuid.UUID) -> list[EnablementRow]:
        ...

    async def load_assignments(self, workspace_id: uuid.UUID) -> AssignmentRows:
        ...


class AuditSink(Protocol):
    async def append(self, entry: AccessLogEntry) -> None:
        ...


class VersionStore(Protocol):
    """Persistent per-workspace version counters."""

    async def get_versions(self, workspace_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        ...

    async def bump(self, workspace_id: uuid.UUID) -> int:
        ...


# ============================================================================
# In-memory implementations
# ============================================================================


class MemoryPersistence:
    """
    Persistence port backed by in-process stores.

    Useful for embedding the engine without a database and in tests;
    `loads` counts catalog loads so refresh behaviour can be observed.
    """

    def __init__(
        self,
        catalog: Optional[CatalogStore] = None,
        assignments: Optional[AssignmentStore] = None,
        enablement_rows: Iterable[EnablementRow] = (),
    ):
        self.catalog = catalog or CatalogStore()
        self.assignments = assignments or AssignmentStore()
        self.enablement_rows = list(enablement_rows)
        self.loads = 0

    async def load_catalog(self, workspace_id: uuid.UUID) -> CatalogRows:
        self.loads += 1
        return CatalogRows(*self.catalog.export_rows())

    async def load_enablement(self, workspace_id: uuid.UUID) -> list[EnablementRow]:
        return [r for r in self.enablement_rows if r.workspace_id == workspace_id]

    async def load_assignments(self, workspace_id: uuid.UUID) -> AssignmentRows:
        return AssignmentRows(
            roles=self.assignments.all_roles(),
            bindings=[b for b in self.assignments.bindings() if b.workspace_id == workspace_id],
            assignments=[a for a in self.assignments.assignments() if a.workspace_id == workspace_id],
        )


class MemoryVersionStore:
    def __init__(self) -> None:
        self.versions: dict[uuid.UUID, int] = {}

    async def get_versions(self, workspace_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        return {ws: self.versions[ws] for ws in workspace_ids if ws in self.versions}

    async def bump(self, workspace_id: uuid.UUID) -> int:
        self.versions[workspace_id] = self.versions.get(workspace_id, 0) + 1
        return self.versions[workspace_id]
