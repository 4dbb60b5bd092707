"""
Engine wiring for host applications.

Usage:
    app = FastAPI(lifespan=authz_lifespan)

The lifespan configures logging, creates the tables, builds the engine
from settings and installs it for `RequireAccess`.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.authz.audit import LogAuditSink
from tenantguard.authz.dependencies import set_engine
from tenantguard.authz.engine import AuthorizationEngine
from tenantguard.authz.repository import SqlAuditSink, SqlPersistence, SqlVersionStore
from tenantguard.core.config import Settings, settings
from tenantguard.core.database import close_db, get_session_factory, init_db
from tenantguard.core.dependencies import close_redis_pool, get_redis_pool
from tenantguard.core.logging import configure_logging

logger = structlog.get_logger(__name__)


def build_engine(
    app_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Optional[Redis] = None,
) -> AuthorizationEngine:
    """Build an engine backed by the SQL adapters selected in settings."""
    sink = None
    if app_settings.authz.audit_sink == "database":
        sink = SqlAuditSink(session_factory)
    elif app_settings.authz.audit_sink == "log":
        sink = LogAuditSink()

    return AuthorizationEngine.from_settings(
        app_settings,
        SqlPersistence(session_factory),
        audit_sink=sink,
        version_store=SqlVersionStore(
            session_factory,
            redis=redis,
            prefix=app_settings.redis.version_prefix,
        ),
    )


@asynccontextmanager
async def authz_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of the authorization engine.
    """
    configure_logging(settings)
    logger.info("authz_starting", version=settings.app.app_version, env=settings.app.app_env)

    await init_db()
    redis = await get_redis_pool()
    engine = build_engine(settings, get_session_factory(), redis)
    await engine.start()
    set_engine(engine)
    app.state.authz_engine = engine

    try:
        yield
    finally:
        await engine.stop()
        set_engine(None)
        await close_redis_pool()
        await close_db()
        logger.info("authz_stopped")
