"""
Internal job endpoints.

Both endpoints are service-to-service and require the dispatcher bearer token:
- POST /jobs enqueues a payload through the configured delivery mode
- POST /jobs/dispatch processes a pushed payload immediately
"""

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from fieldqueue.config.logging import get_logger
from fieldqueue.v1.core.exceptions import (
    ServiceUnavailableError,
    UnauthorizedError,
    create_success_response,
)
from fieldqueue.v1.infra.jobs.idempotency import compute_job_id
from fieldqueue.v1.infra.jobs.runtime import JobRuntime
from fieldqueue.v1.infra.jobs.schemas import (
    JobEnqueueResponse,
    JobPayload,
    QueuedJob,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_runtime(request: Request) -> JobRuntime:
    """Dependency returning the job runtime attached to the app."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ServiceUnavailableError("Job runtime is not initialized")
    return runtime


def require_service_token(
    runtime: JobRuntime = Depends(get_runtime),
    authorization: str | None = Header(None, alias="Authorization"),
) -> None:
    """Check the service bearer token shared with the dispatcher."""
    expected = runtime.settings.job_dispatcher_token
    if not expected:
        raise ServiceUnavailableError("Service token is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
        raise UnauthorizedError("Invalid service credential")


@router.post("", response_model=dict, dependencies=[Depends(require_service_token)])
async def enqueue_job(
    payload: JobPayload,
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Enqueue a background job."""
    row_id = await runtime.queue.enqueue(payload)

    response = JobEnqueueResponse(
        job_id=compute_job_id(payload.as_payload()),
        row_id=row_id,
        delivery_mode=runtime.queue.config.delivery_mode,
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.post(
    "/dispatch", response_model=dict, dependencies=[Depends(require_service_token)]
)
async def process_dispatched_job(
    payload: JobPayload,
    runtime: JobRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Process a payload delivered by the dispatcher (push delivery)."""
    job = QueuedJob(
        org_id=payload.org_id, type=payload.type, data=payload.data, attempts=1
    )
    result = await runtime.executor.process_job(job)

    logger.info(
        "Dispatched job processed",
        job_type=payload.type,
        org_id=payload.org_id,
        outcome=result.outcome.value,
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/stats", response_model=dict)
async def job_stats(runtime: JobRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Queue depth and registered handlers."""
    depth = await runtime.queue.queue_depth()
    return create_success_response(
        data={
            "delivery_mode": runtime.queue.config.delivery_mode.value,
            "queue": depth,
            "handlers": runtime.registry.list(),
        }
    )
