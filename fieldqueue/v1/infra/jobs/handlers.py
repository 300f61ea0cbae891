"""
Job handlers for background business operations.

The business logic itself lives in the application's serverless functions;
handlers here translate a job payload into one authenticated function call
and map the response onto a JobResult.
"""

from typing import Any

import httpx

from fieldqueue.config.logging import get_logger
from fieldqueue.config.settings import Settings
from fieldqueue.v1.infra.jobs.schemas import JobPayload, JobResult

logger = get_logger(__name__)


class FunctionCallHandler:
    """
    Invokes a named business function with the job's org and data.

    Transport errors are raised so the queue retries the attempt. HTTP error
    responses are reported as a failed JobResult carrying the function's error.
    """

    required_fields: tuple[str, ...] = ()

    def __init__(
        self,
        settings: Settings,
        function_name: str,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.function_name = function_name
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.settings.functions_base_url.rstrip('/')}/{self.function_name}"

    def build_body(self, payload: JobPayload) -> dict[str, Any]:
        missing = [f for f in self.required_fields if not payload.data.get(f)]
        if missing:
            raise ValueError(
                f"{self.function_name} payload missing required fields: "
                f"{', '.join(missing)}"
            )
        return {"orgId": payload.org_id, **payload.data}

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.service_role_key:
            headers["Authorization"] = f"Bearer {self.settings.service_role_key}"
        return headers

    async def handle(self, payload: JobPayload) -> JobResult:
        body = self.build_body(payload)

        client = self._client or httpx.AsyncClient(
            timeout=self.settings.functions_timeout_s
        )
        try:
            response = await client.post(self.url, json=body, headers=self._headers())
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            error = _error_message(response)
            logger.warning(
                "Business function failed",
                function=self.function_name,
                status_code=response.status_code,
                error=error,
            )
            return JobResult(success=False, error=error)

        return JobResult(success=True, data=_json_or_none(response))


class SendInvoiceReminderHandler(FunctionCallHandler):
    """
    Sends an invoice reminder email.

    Payload expected:
    {
        "invoiceId": "invoice-id",
        "recipientEmail": "billing@example.com"  # optional override
    }
    """

    required_fields = ("invoiceId",)

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, "send-invoice-email", client)

    def build_body(self, payload: JobPayload) -> dict[str, Any]:
        body = super().build_body(payload)
        body.setdefault("reminder", True)
        return body


class CheckDriverExpirationsHandler(FunctionCallHandler):
    """Periodic check of driver credentials that are expiring."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, "check-driver-expirations", client)


class RunScheduledReportsHandler(FunctionCallHandler):
    """Runs the scheduled reports that are due for the organization."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, "run-scheduled-reports", client)


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {"response": data}


def _error_message(response: httpx.Response) -> str:
    data = _json_or_none(response) or {}
    message = data.get("error") or data.get("message")
    if isinstance(message, dict):
        message = message.get("message")
    return str(message) if message else f"HTTP {response.status_code}"
