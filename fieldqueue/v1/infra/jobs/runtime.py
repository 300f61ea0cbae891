"""
Wiring of the job subsystem from settings.
"""

from dataclasses import dataclass

from fieldqueue.config.logging import get_logger
from fieldqueue.config.settings import DeliveryMode, RunStoreType, Settings
from fieldqueue.infra.database import Database
from fieldqueue.v1.core.audit import AuditLogger, StructlogAuditLogger
from fieldqueue.v1.core.registries import JobRegistry
from fieldqueue.v1.infra.jobs.dispatcher import HttpNotifier, Notifier
from fieldqueue.v1.infra.jobs.executor import JobExecutor
from fieldqueue.v1.infra.jobs.idempotency import (
    DatabaseRunStore,
    InMemoryRunStore,
    RunStore,
)
from fieldqueue.v1.infra.jobs.queue import JobQueue
from fieldqueue.v1.infra.jobs.registry_init import build_job_registry

logger = get_logger(__name__)


@dataclass
class JobRuntime:
    """Everything an executor process or the API needs to run jobs."""

    settings: Settings
    database: Database | None
    registry: JobRegistry
    run_store: RunStore
    queue: JobQueue
    executor: JobExecutor

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()


def build_run_store(settings: Settings, database: Database | None) -> RunStore:
    """Select the idempotency backend named by the settings."""
    if settings.job_run_store == RunStoreType.MEMORY:
        logger.warning(
            "Using in-memory job run store; duplicates are only detected "
            "within this process"
        )
        return InMemoryRunStore()

    if database is None:
        raise ValueError("Database run store requires a database")
    return DatabaseRunStore(database)


def build_notifier(settings: Settings) -> Notifier:
    return HttpNotifier(
        url=settings.job_dispatcher_url,
        token=settings.job_dispatcher_token,
        timeout=settings.job_dispatcher_timeout_s,
    )


def build_runtime(
    settings: Settings,
    database: Database | None = None,
    registry: JobRegistry | None = None,
    audit: AuditLogger | None = None,
    notifier: Notifier | None = None,
) -> JobRuntime:
    """Assemble queue, run store and executor. Collaborators may be injected."""
    config = settings.job_queue_config()

    needs_database = (
        config.delivery_mode == DeliveryMode.TABLE
        or settings.job_run_store == RunStoreType.DATABASE
    )
    if database is None and needs_database:
        database = Database(settings)

    if notifier is None and config.delivery_mode == DeliveryMode.PUSH:
        notifier = build_notifier(settings)

    registry = registry or build_job_registry(settings)
    run_store = build_run_store(settings, database)
    queue = JobQueue(
        config,
        database=database if config.delivery_mode == DeliveryMode.TABLE else None,
        notifier=notifier,
    )
    executor = JobExecutor(
        config,
        queue=queue,
        registry=registry,
        run_store=run_store,
        audit=audit or StructlogAuditLogger(),
    )

    return JobRuntime(
        settings=settings,
        database=database,
        registry=registry,
        run_store=run_store,
        queue=queue,
        executor=executor,
    )
