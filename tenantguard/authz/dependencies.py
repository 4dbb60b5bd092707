"""
Authorization dependencies for FastAPI.

Host applications guard their own endpoints with `RequireAccess`. The
engine is installed once at startup with `set_engine`; the caller's
principal and tenant are read from `request.state`, where the host's
authentication layer puts them (or supplied by overriding
`get_principal` / `get_tenant_context`).
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from tenantguard.authz.domain import Decision, EvalContext, Principal, TenantContext
from tenantguard.authz.engine import AuthorizationEngine
from tenantguard.authz.errors import ResourceNotFound
from tenantguard.authz.service import AuthorizationService
from tenantguard.core.dependencies import DbDep


# ============================================================================
# Engine Dependency
# ============================================================================

# Global engine (singleton pattern)
_engine: Optional[AuthorizationEngine] = None


def set_engine(engine: Optional[AuthorizationEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> AuthorizationEngine:
    """Get the process-wide authorization engine."""
    if _engine is None:
        raise RuntimeError("Authorization engine is not configured")
    return _engine


EngineDep = Annotated[AuthorizationEngine, Depends(get_engine)]


def get_authz_service(db: DbDep, engine: EngineDep) -> AuthorizationService:
    """Administration service over the request session, validating with the engine's configuration."""
    return AuthorizationService(
        db,
        engine=engine,
        version_store=engine.version_store,
        vocabulary=engine.resolver.vocabulary,
        max_depth=engine.cache.max_depth,
    )


AuthzServiceDep = Annotated[AuthorizationService, Depends(get_authz_service)]


# ============================================================================
# Caller Context
# ============================================================================


def get_principal(request: Request) -> Optional[Principal]:
    """Principal set by the host's authentication layer, if any."""
    return getattr(request.state, "principal", None)


def get_tenant_context(request: Request) -> TenantContext:
    tenant = getattr(request.state, "tenant", None)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "Tenant context is required"},
        )
    return tenant


def get_eval_context(request: Request) -> Optional[EvalContext]:
    """Record facts a handler placed on the request, if any."""
    return getattr(request.state, "eval_context", None)


PrincipalDep = Annotated[Optional[Principal], Depends(get_principal)]
TenantDep = Annotated[TenantContext, Depends(get_tenant_context)]


# ============================================================================
# Access Checking Dependencies
# ============================================================================


class RequireAccess:
    """
    Dependency class for requiring access to a resource action.

    Usage:
        @router.delete("/employees/{id}", dependencies=[Depends(RequireAccess("hr.employees", "delete"))])
        async def delete_employee(id: UUID):
            ...

    Or as a dependency parameter to receive the decision:
        @router.get("/employees")
        async def list_employees(
            decision: Annotated[Decision, Depends(RequireAccess("hr.employees", "view"))]
        ):
            ...
    """

    def __init__(self, resource_code: str, action: str):
        """
        Initialize access requirement.

        Args:
            resource_code: Qualified resource code (e.g., "hr.employees")
            action: Action name (e.g., "delete")
        """
        self.resource_code = resource_code
        self.action = action

    async def __call__(
        self,
        request: Request,
        engine: EngineDep,
        principal: PrincipalDep,
        tenant: TenantDep,
    ) -> Decision:
        """Check access and raise 403 if denied, 404 if the resource is unknown."""
        try:
            decision = await engine.check(
                principal,
                self.resource_code,
                self.action,
                tenant,
                ctx=get_eval_context(request),
                request_id=request.headers.get("x-request-id"),
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )
        except ResourceNotFound:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "code": "RESOURCE_NOT_FOUND",
                    "message": f"Unknown resource: {self.resource_code}",
                    "resource": self.resource_code,
                },
            )

        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "ACCESS_DENIED",
                    "message": "Access denied",
                    "reason": decision.reason.value,
                    "resource": self.resource_code,
                    "action": self.action,
                },
            )
        return decision
