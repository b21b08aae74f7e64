"""
Health checks for the VodHub collector
Monitors the catalog database, resource site health and collection activity
"""
import asyncio
import time
from typing import Any, Dict
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import func, select

from .config import settings
from .database import Database, SourceRegistry
from .logging_config import get_logger
from .models import CollectionTask

logger = get_logger(__name__)

health_router = APIRouter(prefix="/health", tags=["health"])


class HealthStatus(BaseModel):
    """Health status response model"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    checks: Dict[str, Any]
    version: str
    uptime_seconds: float


class ComponentHealth(BaseModel):
    """Individual component health"""
    name: str
    status: str  # "healthy", "degraded", "unhealthy"
    response_time_ms: float
    message: str
    details: Dict[str, Any] = {}


# Track service start time for uptime calculation
SERVICE_START_TIME = time.time()


async def check_database_health(database: Database) -> ComponentHealth:
    """Check database connectivity"""
    start_time = time.perf_counter()

    try:
        await database.ping()
        response_time = (time.perf_counter() - start_time) * 1000
        return ComponentHealth(
            name="database",
            status="healthy",
            response_time_ms=round(response_time, 2),
            message="Database is healthy",
            details={"pool_type": database.engine.pool.__class__.__name__},
        )
    except Exception as e:
        response_time = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth(
            name="database",
            status="unhealthy",
            response_time_ms=round(response_time, 2),
            message=f"Database connection failed: {str(e)}",
            details={"error": str(e)},
        )


async def check_sources_health(database: Database) -> ComponentHealth:
    """Degraded when any enabled source is over the failure threshold"""
    start_time = time.perf_counter()

    try:
        registry = SourceRegistry(database.session_factory)
        enabled = {s.name for s in await registry.list_sources(enabled_only=True)}
        down = [
            h.source_name for h in await registry.list_health()
            if h.source_name in enabled and h.consecutive_failures >= registry.failure_threshold
        ]
        response_time = (time.perf_counter() - start_time) * 1000

        status = "healthy"
        message = "All sources reachable"
        if not enabled:
            status, message = "degraded", "No enabled sources"
        elif down:
            status = "degraded"
            message = f"{len(down)} of {len(enabled)} sources down"

        return ComponentHealth(
            name="sources",
            status=status,
            response_time_ms=round(response_time, 2),
            message=message,
            details={"enabled": len(enabled), "down": down},
        )
    except Exception as e:
        response_time = (time.perf_counter() - start_time) * 1000
        logger.error(f"Source health check failed: {e}")
        return ComponentHealth(
            name="sources",
            status="unhealthy",
            response_time_ms=round(response_time, 2),
            message=f"Source health check failed: {str(e)}",
            details={"error": str(e)},
        )


async def check_collector_health(database: Database) -> ComponentHealth:
    """Report running collection tasks"""
    start_time = time.perf_counter()

    try:
        async with database.session() as session:
            running = await session.scalar(
                select(func.count(CollectionTask.id)).where(CollectionTask.status == "running")
            )
        response_time = (time.perf_counter() - start_time) * 1000
        return ComponentHealth(
            name="collector",
            status="healthy",
            response_time_ms=round(response_time, 2),
            message="Collector is healthy",
            details={"running_tasks": running or 0},
        )
    except Exception as e:
        response_time = (time.perf_counter() - start_time) * 1000
        logger.error(f"Collector health check failed: {e}")
        return ComponentHealth(
            name="collector",
            status="unhealthy",
            response_time_ms=round(response_time, 2),
            message=f"Collector health check failed: {str(e)}",
            details={"error": str(e)},
        )


@health_router.get("", response_model=HealthStatus)
async def get_health_status(request: Request):
    """Get health status of all components"""
    database: Database = request.app.state.database

    checks = await asyncio.gather(
        check_database_health(database),
        check_sources_health(database),
        check_collector_health(database),
    )

    health_checks = {}
    overall_status = "healthy"
    for check in checks:
        health_checks[check.name] = {
            "status": check.status,
            "response_time_ms": check.response_time_ms,
            "message": check.message,
            "details": check.details,
        }
        if check.status == "unhealthy":
            overall_status = "unhealthy"
        elif check.status == "degraded" and overall_status == "healthy":
            overall_status = "degraded"

    return HealthStatus(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        checks=health_checks,
        version=settings.VERSION,
        uptime_seconds=round(time.time() - SERVICE_START_TIME, 2),
    )


@health_router.get("/live")
async def liveness_check():
    """Liveness probe"""
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc),
        "uptime_seconds": round(time.time() - SERVICE_START_TIME, 2),
    }
