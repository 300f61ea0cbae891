from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from fieldqueue.infra.database import Database
from fieldqueue.v1.core.exceptions import create_success_response
from fieldqueue.v1.infra.jobs.routes import get_runtime
from fieldqueue.v1.infra.jobs.runtime import JobRuntime

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue status."""

    delivery_mode: str
    pending: int = 0
    locked: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(runtime: JobRuntime = Depends(get_runtime)):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = None
    if runtime.database is not None:
        db_health = await _check_database_health(runtime.database)
        if not db_health.connected:
            overall_ok = False

    queue_health = QueueHealth(delivery_mode=runtime.queue.config.delivery_mode.value)
    if db_health is None or db_health.connected:
        depth = await runtime.queue.queue_depth()
        queue_health = queue_health.model_copy(update=depth)

    health_data = {
        "ok": overall_ok,
        "version": runtime.settings.version,
        "environment": runtime.settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump() if db_health else None,
        "queue": queue_health.model_dump(),
    }

    return create_success_response(data=health_data)


async def _check_database_health(database: Database) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        async with database.SessionLocal() as session:
            await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))
