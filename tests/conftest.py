from collections.abc import AsyncGenerator

import pytest
from sqlalchemy import func, select

from fieldqueue.config.settings import Settings
from fieldqueue.infra.database import Database
from fieldqueue.v1.core.registries import JobRegistry
from fieldqueue.v1.infra.jobs.executor import JobExecutor
from fieldqueue.v1.infra.jobs.idempotency import DatabaseRunStore
from fieldqueue.v1.infra.jobs.models import JobQueueRow, JobRun
from fieldqueue.v1.infra.jobs.queue import JobQueue
from fieldqueue.v1.infra.jobs.schemas import JobQueueConfig
from tests.doubles import RecordingAuditLogger

SERVICE_TOKEN = "test-service-token"


@pytest.fixture
def test_settings() -> Settings:
    """Settings backed by an in-memory SQLite database."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        debug=False,
        job_poll_interval_ms=1,
        job_max_attempts=3,
        job_handler_timeout_s=5,
        job_dispatcher_token=SERVICE_TOKEN,
    )


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Fresh database with job tables created."""
    db = Database(test_settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def queue_config(test_settings) -> JobQueueConfig:
    return test_settings.job_queue_config()


@pytest.fixture
def queue(queue_config, database) -> JobQueue:
    return JobQueue(queue_config, database=database)


@pytest.fixture
def run_store(database) -> DatabaseRunStore:
    return DatabaseRunStore(database)


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def audit() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def executor(queue_config, queue, registry, run_store, audit) -> JobExecutor:
    return JobExecutor(
        queue_config,
        queue=queue,
        registry=registry,
        run_store=run_store,
        audit=audit,
    )


async def count_rows(database: Database, model) -> int:
    async with database.SessionLocal() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def queue_rows(database: Database) -> list[JobQueueRow]:
    async with database.SessionLocal() as session:
        result = await session.execute(
            select(JobQueueRow).order_by(JobQueueRow.created_at, JobQueueRow.id)
        )
        return list(result.scalars().all())


async def run_rows(database: Database) -> list[JobRun]:
    async with database.SessionLocal() as session:
        result = await session.execute(select(JobRun))
        return list(result.scalars().all())
