"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (webhook duplicate filter)
"""
from typing import Any, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from settlement.config import get_settings
from settlement.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the settlement dependencies."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Redis only backs the webhook duplicate filter, so an outage degrades
        rather than fails readiness.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()
        except Exception as e:
            logger.warning("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            if redis_client:
                await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: healthy, degraded (Redis down) or unhealthy (database down)
        """
        checks: Dict[str, Any] = {}
        status = "healthy"

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            status = "unhealthy"

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {"status": "unhealthy", "service": "redis", "error": str(e)}
            if status == "healthy":
                status = "degraded"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; does not touch external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }
