"""Tests for the FastAPI access dependency."""

from typing import Annotated

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantguard.authz.dependencies import AuthzServiceDep, RequireAccess, get_authz_service, get_engine, set_engine
from tenantguard.authz.domain import Decision
from tenantguard.authz.engine import AuthorizationEngine
from tenantguard.authz.errors import ConfigurationError
from tenantguard.authz.resolver import Resolver
from tenantguard.authz.schemas import ModuleCreate, PermissionCreate, ResourceCreate
from tenantguard.authz.vocabulary import Action, Vocabulary
from tenantguard.core.database import get_db, init_db


def build_app(world, with_tenant: bool = True) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        # Stand-in for the host's authentication layer
        if request.headers.get("x-user") == "hr":
            request.state.principal = world.user
        if with_tenant:
            request.state.tenant = world.tenant
        return await call_next(request)

    @app.get("/employees")
    async def list_employees(
        decision: Annotated[Decision, Depends(RequireAccess("hr.employees", "view"))],
    ):
        return {"reason": decision.reason.value}

    @app.get("/handbook", dependencies=[Depends(RequireAccess("hr.handbook", "view"))])
    async def handbook():
        return {"ok": True}

    @app.get("/payroll", dependencies=[Depends(RequireAccess("hr.payroll", "view"))])
    async def payroll():
        return {"ok": True}

    return app


@pytest_asyncio.fixture()
async def engine(world):
    engine = AuthorizationEngine(world.persistence)
    set_engine(engine)
    yield engine
    set_engine(None)


@pytest_asyncio.fixture()
async def client(world, engine):
    transport = ASGITransport(app=build_app(world))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestRequireAccess:
    """HTTP mapping of decisions."""

    @pytest.mark.asyncio
    async def test_granted(self, client, world):
        world.grant(world.view)
        response = await client.get("/employees", headers={"x-user": "hr"})
        assert response.status_code == 200
        assert response.json() == {"reason": "explicit_grant"}

    @pytest.mark.asyncio
    async def test_denied(self, client):
        response = await client.get("/employees", headers={"x-user": "hr"})
        assert response.status_code == 403
        assert response.json()["detail"] == {
            "code": "ACCESS_DENIED",
            "message": "Access denied",
            "reason": "no_grant",
            "resource": "hr.employees",
            "action": "view",
        }

    @pytest.mark.asyncio
    async def test_explicit_deny_reason(self, client, world):
        world.grant(world.view)
        world.deny(world.view)
        response = await client.get("/employees", headers={"x-user": "hr"})
        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "explicit_deny"

    @pytest.mark.asyncio
    async def test_public_without_principal(self, client):
        response = await client.get("/handbook")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_resource(self, client):
        response = await client.get("/payroll", headers={"x-user": "hr"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "RESOURCE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_tenant_required(self, world, engine):
        transport = ASGITransport(app=build_app(world, with_tenant=False))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/employees", headers={"x-user": "hr"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "TENANT_REQUIRED"


def test_engine_must_be_configured():
    set_engine(None)
    with pytest.raises(RuntimeError):
        get_engine()


class TestAuthzServiceDependency:
    """The service dependency wraps the request session and installed engine."""

    @pytest.mark.asyncio
    async def test_service_over_request_session(self, world, engine, tmp_path):
        db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authz.db'}")
        await init_db(db_engine)
        session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

        async def override_get_db():
            async with session_factory() as session:
                yield session

        app = build_app(world)
        app.dependency_overrides[get_db] = override_get_db

        @app.post("/modules")
        async def create_module(service: AuthzServiceDep):
            assert service.engine is engine
            module = await service.create_module(ModuleCreate(code="crm", category="crm", name="CRM"))
            return {"code": module.code}

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/modules")
        await db_engine.dispose()

        assert response.status_code == 200
        assert response.json() == {"code": "crm"}

    @pytest.mark.asyncio
    async def test_service_uses_engine_configuration(self, world, tmp_path):
        """Admin writes are validated against the engine's vocabulary and depth guard."""
        vocabulary = Vocabulary(actions=frozenset({Action.VIEW, Action.EDIT}))
        configured = AuthorizationEngine(world.persistence, resolver=Resolver(vocabulary=vocabulary), max_depth=3)
        db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authz.db'}")
        await init_db(db_engine)

        async with AsyncSession(db_engine, expire_on_commit=False) as session:
            service = get_authz_service(session, configured)
            assert service.vocabulary is vocabulary
            assert service.max_depth == 3

            crm = await service.create_module(ModuleCreate(code="crm", category="crm"))
            leads = await service.create_resource(ResourceCreate(module_id=crm.id, code="leads", resource_type="page"))
            await service.define_permission(PermissionCreate(resource_id=leads.id, action="view"))
            with pytest.raises(ConfigurationError):
                await service.define_permission(PermissionCreate(resource_id=leads.id, action="export"))
        await db_engine.dispose()
