"""
Liveness and readiness checks.

The database is required. Redis only de-duplicates webhook deliveries, so
losing it degrades the service rather than making it unhealthy.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """A dependency did not answer."""


class HealthCheck:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds

    async def _timed_check(
        self, service: str, check: Callable[[], Awaitable[Any]]
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(check(), timeout=self.timeout_seconds)
        except Exception as e:
            logger.error("health_check_failed", service=service, error=str(e) or type(e).__name__)
            raise HealthCheckError(f"{service} unreachable: {e}") from e
        return {
            "status": "healthy",
            "service": service,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    async def _select_one(self) -> None:
        async with self.session_factory() as db:
            await db.execute(text("SELECT 1"))

    async def check_database(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If the database does not answer SELECT 1
        """
        return await self._timed_check("database", self._select_one)

    async def check_redis(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If Redis is configured but does not answer PING
        """
        if self.redis_client is None:
            return {"status": "disabled", "service": "redis"}
        return await self._timed_check("redis", self.redis_client.ping)

    async def check_all(self) -> Dict[str, Any]:
        """Run both checks concurrently and fold them into healthy / degraded / unhealthy."""
        database, cache = await asyncio.gather(
            self.check_database(), self.check_redis(), return_exceptions=True
        )

        checks: Dict[str, Any] = {}
        for name, outcome in (("database", database), ("redis", cache)):
            if isinstance(outcome, BaseException):
                checks[name] = {"status": "unhealthy", "service": name, "error": str(outcome)}
            else:
                checks[name] = outcome

        if checks["database"]["status"] == "unhealthy":
            overall = "unhealthy"
        elif checks["redis"]["status"] == "unhealthy":
            overall = "degraded"
        else:
            overall = "healthy"
        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
