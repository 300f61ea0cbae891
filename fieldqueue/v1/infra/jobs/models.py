"""
Job queue and run-log models.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from fieldqueue.infra.database import Base
from fieldqueue.v1.infra.jobs.schemas import QueuedJob


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobQueueRow(Base):
    """
    Pending unit of work in table delivery mode.

    A row is claimed by setting ``locked_at`` and incrementing ``attempts`` in a
    single statement. Claim order is ``created_at`` ascending and retries keep
    the original ``created_at``.
    """

    __tablename__ = "job_queue"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    org_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Organization scope"
    )
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
        comment="Job-specific parameters",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Number of claims made",
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="When the row was claimed by an executor",
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Enqueue time, determines FIFO claim order",
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="job_queue_attempts_check"),
        Index("ix_job_queue_claim_order", "locked_at", "created_at"),
    )

    def to_queued_job(self) -> QueuedJob:
        return QueuedJob(
            id=self.id,
            org_id=self.org_id,
            type=self.type,
            data=self.data,
            attempts=self.attempts,
            locked_at=self.locked_at,
        )


class JobRun(Base):
    """Run-log entry: one row per logical job that reached a handler result."""

    __tablename__ = "job_runs"

    job_id: Mapped[str] = mapped_column(
        Text, primary_key=True, comment="Content-derived idempotency key"
    )
    org_id: Mapped[str] = mapped_column(
        Text, nullable=False, index=True, comment="Organization scope"
    )
    processed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    result: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="JobResult returned by the handler"
    )
