"""
Dependency injection utilities for FastAPI.
"""

from typing import Annotated, Optional

from fastapi import Depends
from redis.asyncio import Redis

from tenantguard.core.config import settings
from tenantguard.core.database import AsyncSession, get_db


# ============================================================================
# Redis Dependency
# ============================================================================

# Global Redis connection pool (singleton pattern)
_redis_pool: Optional[Redis] = None


async def get_redis_pool() -> Optional[Redis]:
    """
    Get or create the global Redis connection pool.

    Returns None when Redis is disabled in settings.
    """
    global _redis_pool

    if not settings.redis.enabled:
        return None

    if _redis_pool is None:
        _redis_pool = Redis(
            host=settings.redis.host,
            port=settings.redis.port,
            password=settings.redis.password if settings.redis.password else None,
            db=settings.redis.db,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.pool_size,
        )
        # Test connection
        try:
            await _redis_pool.ping()
        except Exception as e:
            _redis_pool = None
            raise RuntimeError(f"Failed to connect to Redis: {e}") from e

    return _redis_pool


async def close_redis_pool() -> None:
    global _redis_pool

    if _redis_pool is not None:
        await _redis_pool.aclose()
    _redis_pool = None


# Type aliases for dependencies
DbDep = Annotated[AsyncSession, Depends(get_db)]
