"""
Job system value objects and Pydantic schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fieldqueue.config.settings import DeliveryMode


class JobOutcome(str, Enum):
    """Terminal outcome of processing a single claimed job."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a job did not complete."""

    MISSING_ORG_ID = "missing_org_id"
    MISSING_HANDLER = "missing_handler"
    HANDLER_ERROR = "handler_error"
    JOB_FAILED = "job_failed"
    INTERNAL_ERROR = "internal_error"


class RetryDisposition(str, Enum):
    """What the queue did with a row after a failed attempt."""

    REQUEUED = "requeued"
    PURGED = "purged"
    DISCARDED = "discarded"  # permanent failure, removed without retry
    MISSING = "missing"  # row gone, or its claim passed to another executor
    NOT_QUEUED = "not_queued"  # push delivery, nothing persisted


class JobPayload(BaseModel):
    """Logical unit of work submitted to the queue."""

    model_config = ConfigDict(populate_by_name=True)

    org_id: str = Field(default="", alias="orgId", description="Tenant identifier")
    type: str = Field(..., description="Job type identifier")
    data: dict[str, Any] = Field(default_factory=dict, description="Job parameters")

    @field_validator("org_id", mode="before")
    @classmethod
    def _coerce_org_id(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    def has_valid_org(self) -> bool:
        return bool(self.org_id.strip())

    def to_wire(self) -> dict[str, Any]:
        """Serialize as the camelCase body sent to the dispatcher."""
        return self.model_dump(by_alias=True, mode="json")

    def as_payload(self) -> "JobPayload":
        return JobPayload(org_id=self.org_id, type=self.type, data=self.data)


class QueuedJob(JobPayload):
    """A payload claimed from the queue, with its storage identity."""

    id: int | None = Field(
        default=None, description="Queue row id (None for pushed deliveries)"
    )
    attempts: int = Field(default=0, ge=0, description="Claims made so far")
    locked_at: datetime | None = Field(
        default=None, description="Claim timestamp, identifies this claim of the row"
    )


class JobResult(BaseModel):
    """Outcome reported by a job handler."""

    success: bool
    error: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def from_handler_value(cls, value: Any) -> "JobResult":
        """Normalize whatever a handler returned into a JobResult."""
        if isinstance(value, JobResult):
            return value
        if value is None:
            return cls(success=True)
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise TypeError(
            f"Job handler returned unsupported result type: {type(value).__name__}"
        )


class ProcessResult(BaseModel):
    """Tagged result of one executor pass over a claimed job."""

    outcome: JobOutcome
    job_id: str | None = None
    row_id: int | None = None
    reason: FailureReason | None = None
    error: str | None = None
    disposition: RetryDisposition | None = None


class JobQueueConfig(BaseModel):
    """Explicit configuration passed to the queue and executor."""

    model_config = ConfigDict(frozen=True)

    delivery_mode: DeliveryMode = DeliveryMode.TABLE
    max_attempts: int = Field(default=5, ge=1)
    poll_interval_ms: int = Field(default=2000, ge=1)
    lock_lease_s: int | None = Field(default=900, ge=1)
    handler_timeout_s: float | None = Field(default=300, gt=0)

    @model_validator(mode="after")
    def _lease_outlives_handler(self) -> "JobQueueConfig":
        if self.lock_lease_s is None:
            return self
        timeout = self.handler_timeout_s
        if timeout is None or self.lock_lease_s <= timeout:
            raise ValueError(
                "lock_lease_s must be greater than handler_timeout_s, "
                "otherwise a running job can be claimed again"
            )
        return self


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: str = Field(..., description="Idempotency key of the logical job")
    row_id: int | None = Field(
        default=None, description="Queue row id (table delivery only)"
    )
    delivery_mode: DeliveryMode
