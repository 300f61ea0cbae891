"""
Idempotency support for background jobs.

A job id is derived from the payload content, not from the queue row, so the
same logical job redelivered through another row or another push collapses
onto a single run-log entry.
"""

import hashlib
import json
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fieldqueue.config.logging import get_logger
from fieldqueue.infra.database import Database
from fieldqueue.v1.infra.jobs.models import JobRun
from fieldqueue.v1.infra.jobs.schemas import JobPayload, JobResult

logger = get_logger(__name__)


def compute_job_id(payload: JobPayload) -> str:
    """Generate the deterministic idempotency key for a payload."""
    canonical = json.dumps(
        {"orgId": payload.org_id, "type": payload.type, "data": payload.data or {}},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RunStore(Protocol):
    """Record of logical jobs that have already executed."""

    async def has_run_before(self, job_id: str) -> bool: ...

    async def mark_run(self, job_id: str, org_id: str, result: JobResult) -> None: ...


class DatabaseRunStore:
    """Durable run store backed by the ``job_runs`` table."""

    def __init__(self, database: Database):
        self.database = database

    async def has_run_before(self, job_id: str) -> bool:
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(JobRun.job_id).where(JobRun.job_id == job_id)
            )
            return result.scalar_one_or_none() is not None

    async def mark_run(self, job_id: str, org_id: str, result: JobResult) -> None:
        async with self.database.SessionLocal() as session:
            session.add(
                JobRun(
                    job_id=job_id,
                    org_id=org_id,
                    result=result.model_dump(mode="json"),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Another executor recorded the same logical job first
                await session.rollback()
                logger.warning(
                    "Job run already recorded", job_id=job_id, org_id=org_id
                )


class InMemoryRunStore:
    """
    Volatile run store kept in process memory.

    Only for tests and single-process development. It gives no guarantee across
    executor processes or restarts, so duplicates are not detected in any
    deployment running more than one executor.
    """

    def __init__(self):
        self.runs: dict[str, tuple[str, JobResult]] = {}

    async def has_run_before(self, job_id: str) -> bool:
        return job_id in self.runs

    async def mark_run(self, job_id: str, org_id: str, result: JobResult) -> None:
        self.runs.setdefault(job_id, (org_id, result))
