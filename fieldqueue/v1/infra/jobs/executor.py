"""
Job executor: claim, dedup-check, dispatch to a handler, record the outcome.
"""

import asyncio
import os
import socket
from typing import Any

from fieldqueue.config.logging import get_logger, setup_logging
from fieldqueue.config.settings import Settings
from fieldqueue.v1.core.audit import AuditLogger
from fieldqueue.v1.core.registries import JobRegistry
from fieldqueue.v1.infra.jobs.idempotency import RunStore, compute_job_id
from fieldqueue.v1.infra.jobs.queue import JobQueue
from fieldqueue.v1.infra.jobs.schemas import (
    FailureReason,
    JobOutcome,
    JobQueueConfig,
    JobResult,
    ProcessResult,
    QueuedJob,
)

logger = get_logger(__name__)

AUDIT_SOURCE = "job_executor"
MISSING_ORG_REASON = "Job payload has no org_id"


class JobExecutor:
    """
    Processes claimed jobs one at a time.

    Runs either as a polling loop (table delivery) or on demand for payloads
    pushed by the dispatcher. ``process_job`` never raises: every outcome is
    returned as a ProcessResult.

    Known limitation: a failed job is retried immediately at its original FIFO
    position, so a job that keeps failing at the head of the queue delays every
    later job until it is purged after max_attempts.
    """

    def __init__(
        self,
        config: JobQueueConfig,
        queue: JobQueue,
        registry: JobRegistry,
        run_store: RunStore,
        audit: AuditLogger,
    ):
        self.config = config
        self.queue = queue
        self.registry = registry
        self.run_store = run_store
        self.audit = audit
        self.executor_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False

    async def process_next_job(self) -> ProcessResult | None:
        """Claim one job and process it. Returns None when there is no work."""
        job = await self.queue.dequeue()
        if job is None:
            return None
        return await self.process_job(job)

    async def process_job(self, job: QueuedJob) -> ProcessResult:
        """Process a single claimed (or pushed) job."""
        try:
            return await self._process(job)
        except Exception as e:
            logger.exception(
                "Unexpected error while processing job",
                row_id=job.id,
                job_type=job.type,
                executor_id=self.executor_id,
            )
            return ProcessResult(
                outcome=JobOutcome.FAILED,
                row_id=job.id,
                reason=FailureReason.INTERNAL_ERROR,
                error=str(e),
            )

    async def _process(self, job: QueuedJob) -> ProcessResult:
        job_logger = logger.bind(row_id=job.id, job_type=job.type, org_id=job.org_id)

        # An invalid org never becomes valid, so the row is dropped, not retried
        if not job.has_valid_org():
            disposition = await self.queue.mark_failed(
                job.id, MISSING_ORG_REASON, permanent=True, claimed_at=job.locked_at
            )
            await self._security_event(
                org_id=None,
                type=FailureReason.MISSING_ORG_ID.value,
                metadata={"row_id": job.id, "job_type": job.type},
            )
            job_logger.warning("Skipping job without org_id")
            return ProcessResult(
                outcome=JobOutcome.SKIPPED,
                row_id=job.id,
                reason=FailureReason.MISSING_ORG_ID,
                error=MISSING_ORG_REASON,
                disposition=disposition,
            )

        payload = job.as_payload()
        job_id = compute_job_id(payload)
        job_logger = job_logger.bind(job_id=job_id)
        metadata = {"row_id": job.id, "job_type": job.type, "attempts": job.attempts}

        if await self.run_store.has_run_before(job_id):
            await self.queue.mark_complete(job.id, claimed_at=job.locked_at)
            await self._action(job, job_id, "job_duplicate", metadata)
            job_logger.info("Duplicate job acknowledged")
            return ProcessResult(
                outcome=JobOutcome.DUPLICATE, job_id=job_id, row_id=job.id
            )

        try:
            handler = self.registry.get(job.type)
        except KeyError:
            error = f"No handler registered for job type: {job.type}"
            disposition = await self.queue.mark_failed(
                job.id, error, permanent=True, claimed_at=job.locked_at
            )
            await self._security_event(
                org_id=job.org_id,
                type="job_missing_handler",
                metadata={**metadata, "job_id": job_id},
            )
            job_logger.error("No handler for job type")
            return ProcessResult(
                outcome=JobOutcome.FAILED,
                job_id=job_id,
                row_id=job.id,
                reason=FailureReason.MISSING_HANDLER,
                error=error,
                disposition=disposition,
            )

        await self._action(job, job_id, "job_start", metadata)
        job_logger.info("Processing job started", executor_id=self.executor_id)

        try:
            result = JobResult.from_handler_value(await self._invoke(handler, payload))
        except Exception as e:
            error = str(e) or e.__class__.__name__
            disposition = await self.queue.mark_failed(
                job.id, error, claimed_at=job.locked_at
            )
            await self._action(
                job,
                job_id,
                "job_failed",
                {**metadata, "error": error, "disposition": disposition.value},
            )
            job_logger.warning(
                "Job handler raised", error=error, disposition=disposition.value
            )
            return ProcessResult(
                outcome=JobOutcome.FAILED,
                job_id=job_id,
                row_id=job.id,
                reason=FailureReason.HANDLER_ERROR,
                error=error,
                disposition=disposition,
            )

        # The handler ran to completion, so the logical job counts as executed
        # even when it reported failure.
        await self.run_store.mark_run(job_id, job.org_id, result)

        if result.success:
            await self.queue.mark_complete(job.id, claimed_at=job.locked_at)
            await self._action(job, job_id, "job_completed", metadata)
            job_logger.info("Processing job completed successfully")
            return ProcessResult(
                outcome=JobOutcome.COMPLETED, job_id=job_id, row_id=job.id
            )

        error = result.error or "Job reported failure"
        disposition = await self.queue.mark_failed(
            job.id, error, claimed_at=job.locked_at
        )
        await self._action(
            job,
            job_id,
            "job_failed",
            {**metadata, "error": error, "disposition": disposition.value},
        )
        job_logger.warning(
            "Job reported failure", error=error, disposition=disposition.value
        )
        return ProcessResult(
            outcome=JobOutcome.FAILED,
            job_id=job_id,
            row_id=job.id,
            reason=FailureReason.JOB_FAILED,
            error=error,
            disposition=disposition,
        )

    async def _invoke(self, handler: Any, payload) -> Any:
        timeout = self.config.handler_timeout_s
        if timeout is None:
            return await handler.handle(payload)
        try:
            return await asyncio.wait_for(handler.handle(payload), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Job handler exceeded {timeout}s deadline") from None

    async def _action(
        self, job: QueuedJob, job_id: str, action: str, metadata: dict[str, Any]
    ) -> None:
        try:
            await self.audit.log_action(
                org_id=job.org_id,
                action=action,
                entity_type="job",
                entity_id=job_id,
                metadata=metadata,
            )
        except Exception:
            logger.exception("Failed to write audit action", action=action)

    async def _security_event(
        self, org_id: str | None, type: str, metadata: dict[str, Any]
    ) -> None:
        try:
            await self.audit.log_security_event(
                org_id=org_id, type=type, source=AUDIT_SOURCE, metadata=metadata
            )
        except Exception:
            logger.exception("Failed to write security event", event_type=type)

    async def run(self) -> None:
        """Poll loop: one job per tick until stop() is called."""
        if self.queue.is_push:
            logger.info(
                "Push delivery mode, executor poll loop disabled",
                executor_id=self.executor_id,
            )
            return

        if self.running:
            raise RuntimeError("Executor is already running")

        self.running = True
        interval = self.config.poll_interval_ms / 1000
        logger.info(
            "Starting job executor",
            executor_id=self.executor_id,
            poll_interval_ms=self.config.poll_interval_ms,
            max_attempts=self.config.max_attempts,
        )

        try:
            while self.running:
                try:
                    await self.process_next_job()
                except Exception:
                    logger.exception(
                        "Error in executor loop", executor_id=self.executor_id
                    )
                await asyncio.sleep(interval)
        finally:
            self.running = False
            logger.info("Job executor stopped", executor_id=self.executor_id)

    def stop(self) -> None:
        """Ask the poll loop to exit after the current tick."""
        logger.info("Stopping job executor", executor_id=self.executor_id)
        self.running = False


async def run_executor(settings: Settings) -> None:
    """Build the runtime from settings and run the poll loop until stopped."""
    from fieldqueue.v1.infra.jobs.runtime import build_runtime

    runtime = build_runtime(settings)
    try:
        await runtime.executor.run()
    finally:
        await runtime.close()


def start_executor(settings: Settings | None = None) -> None:
    """Process entry point for a dedicated executor process."""
    from fieldqueue.config.settings import settings as default_settings

    settings = settings or default_settings
    setup_logging(settings)
    try:
        asyncio.run(run_executor(settings))
    except KeyboardInterrupt:
        logger.info("Executor interrupted")
