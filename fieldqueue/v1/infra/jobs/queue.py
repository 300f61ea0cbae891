"""
Durable job queue with table and push delivery modes.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, not_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from fieldqueue.config.logging import get_logger
from fieldqueue.config.settings import DeliveryMode
from fieldqueue.infra.database import Database
from fieldqueue.v1.core.exceptions import DispatchError, InvalidJobPayloadError
from fieldqueue.v1.infra.jobs.dispatcher import Notifier
from fieldqueue.v1.infra.jobs.models import JobQueueRow
from fieldqueue.v1.infra.jobs.schemas import (
    JobPayload,
    JobQueueConfig,
    QueuedJob,
    RetryDisposition,
)

logger = get_logger(__name__)


class JobQueue:
    """
    Transport for pending work.

    Table mode persists rows in ``job_queue`` and hands them out one at a time
    through an atomic claim. Push mode persists nothing and forwards each
    payload to the dispatcher exactly once (at-most-once delivery).
    """

    def __init__(
        self,
        config: JobQueueConfig,
        database: Database | None = None,
        notifier: Notifier | None = None,
    ):
        if config.delivery_mode == DeliveryMode.TABLE and database is None:
            raise ValueError("Table delivery mode requires a database")
        if config.delivery_mode == DeliveryMode.PUSH and notifier is None:
            raise ValueError("Push delivery mode requires a notifier")

        self.config = config
        self.database = database
        self.notifier = notifier

    @property
    def is_push(self) -> bool:
        return self.config.delivery_mode == DeliveryMode.PUSH

    async def enqueue(self, payload: JobPayload | dict[str, Any]) -> int | None:
        """
        Submit work. Returns the queue row id in table mode, None in push mode.

        Raises:
            InvalidJobPayloadError: org_id is missing (caller error, never retried)
        """
        if isinstance(payload, dict):
            payload = JobPayload.model_validate(payload)

        if not payload.has_valid_org():
            raise InvalidJobPayloadError(
                "org_id is required for job enqueueing",
                details={"type": payload.type},
            )

        normalized = payload.as_payload()

        if self.is_push:
            await self._push(normalized)
            return None

        async with self.database.SessionLocal() as session:
            row = JobQueueRow(
                org_id=normalized.org_id,
                type=normalized.type,
                data=normalized.data,
                attempts=0,
                locked_at=None,
                created_at=datetime.now(UTC),
            )
            session.add(row)
            await session.commit()

        logger.info(
            "Job enqueued",
            row_id=row.id,
            job_type=normalized.type,
            org_id=normalized.org_id,
        )
        return row.id

    async def _push(self, payload: JobPayload) -> None:
        try:
            await self.notifier.dispatch(payload)
        except DispatchError as e:
            # At-most-once: the dispatcher owns delivery, nothing is retried here
            logger.error(
                "Job dispatch failed",
                job_type=payload.type,
                org_id=payload.org_id,
                error=e.message,
                details=e.details,
            )
            return
        except Exception:
            logger.exception(
                "Job dispatch failed", job_type=payload.type, org_id=payload.org_id
            )
            return

        logger.info("Job dispatched", job_type=payload.type, org_id=payload.org_id)

    def _claimable(self, row: Any, now: datetime):
        """Rows that are unlocked, or whose lock lease has expired."""
        condition = row.locked_at.is_(None)
        if self.config.lock_lease_s is not None:
            cutoff = now - timedelta(seconds=self.config.lock_lease_s)
            condition = or_(condition, row.locked_at < cutoff)
        return condition

    async def dequeue(self) -> QueuedJob | None:
        """
        Claim the oldest available row.

        The claim is one conditional UPDATE ... RETURNING whose target is picked
        by a FOR UPDATE SKIP LOCKED subquery, so concurrent executors never
        receive the same row. Storage errors are logged and reported as no work.
        """
        if self.is_push:
            return None

        now = datetime.now(UTC)
        candidate = aliased(JobQueueRow, name="candidate")
        next_id = (
            select(candidate.id)
            .where(self._claimable(candidate, now))
            .order_by(candidate.created_at, candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        claim = (
            update(JobQueueRow)
            .where(JobQueueRow.id == next_id, self._claimable(JobQueueRow, now))
            .values(locked_at=now, attempts=JobQueueRow.attempts + 1)
            .returning(JobQueueRow)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.database.SessionLocal() as session:
                result = await session.execute(claim)
                row = result.scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to claim job")
            return None

        if row is None:
            return None

        logger.info(
            "Claimed job",
            row_id=row.id,
            job_type=row.type,
            org_id=row.org_id,
            attempts=row.attempts,
        )
        return row.to_queued_job()

    def _owned(self, row_id: int, claimed_at: datetime | None) -> list:
        """Match the row only while it still carries the given claim."""
        conditions = [JobQueueRow.id == row_id]
        if claimed_at is not None:
            conditions.append(JobQueueRow.locked_at == claimed_at)
        return conditions

    async def mark_complete(
        self, row_id: int | None, claimed_at: datetime | None = None
    ) -> None:
        """
        Acknowledge a row by deleting it. Missing rows are not an error.

        With ``claimed_at`` the delete only applies while the row still holds
        that claim, so an executor whose lease expired cannot remove a row that
        another executor has since claimed.
        """
        if row_id is None or self.is_push:
            return

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                delete(JobQueueRow).where(*self._owned(row_id, claimed_at))
            )
            await session.commit()

        if claimed_at is not None and not result.rowcount:
            logger.warning("Completed job no longer held by this claim", row_id=row_id)

    async def mark_failed(
        self,
        row_id: int | None,
        error: str,
        permanent: bool = False,
        claimed_at: datetime | None = None,
    ) -> RetryDisposition:
        """
        Record a failed attempt.

        Rows that reached max attempts (or failed permanently) are deleted;
        there is no dead-letter table. Otherwise the lock is released and the
        row keeps its created_at, so it is retried at the same FIFO position
        with no backoff.

        With ``claimed_at`` nothing happens unless the row still holds that
        claim; a lost claim reports MISSING.
        """
        if row_id is None or self.is_push:
            return RetryDisposition.NOT_QUEUED

        async with self.database.SessionLocal() as session:
            if permanent:
                result = await session.execute(
                    delete(JobQueueRow).where(*self._owned(row_id, claimed_at))
                )
                disposition = (
                    RetryDisposition.DISCARDED
                    if result.rowcount
                    else RetryDisposition.MISSING
                )
            else:
                purge = await session.execute(
                    delete(JobQueueRow).where(
                        *self._owned(row_id, claimed_at),
                        JobQueueRow.attempts >= self.config.max_attempts,
                    )
                )
                if purge.rowcount:
                    disposition = RetryDisposition.PURGED
                else:
                    requeue = await session.execute(
                        update(JobQueueRow)
                        .where(*self._owned(row_id, claimed_at))
                        .values(locked_at=None)
                    )
                    disposition = (
                        RetryDisposition.REQUEUED
                        if requeue.rowcount
                        else RetryDisposition.MISSING
                    )
            await session.commit()

        if disposition in (RetryDisposition.PURGED, RetryDisposition.DISCARDED):
            logger.error(
                "Job removed from queue",
                row_id=row_id,
                disposition=disposition.value,
                max_attempts=self.config.max_attempts,
                error=error,
            )
        else:
            logger.warning(
                "Job attempt failed",
                row_id=row_id,
                disposition=disposition.value,
                error=error,
            )

        return disposition

    async def queue_depth(self) -> dict[str, int]:
        """
        Count claimable and held rows.

        A row whose lock lease has expired is counted as pending, matching what
        the next dequeue would see.
        """
        if self.is_push:
            return {"pending": 0, "locked": 0}

        held = not_(self._claimable(JobQueueRow, datetime.now(UTC)))
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(
                    func.count(JobQueueRow.id),
                    func.sum(case((held, 1), else_=0)),
                )
            )
            total, locked = result.one()

        locked = locked or 0
        return {"pending": total - locked, "locked": locked}
