"""
Outbound delivery of pushed jobs to the external dispatcher.
"""

from typing import Protocol

import httpx

from fieldqueue.config.logging import get_logger
from fieldqueue.v1.core.exceptions import DispatchError
from fieldqueue.v1.infra.jobs.schemas import JobPayload

logger = get_logger(__name__)


class Notifier(Protocol):
    """Transport used by push delivery mode."""

    async def dispatch(self, payload: JobPayload) -> None:
        """Deliver a payload once. Raises DispatchError on failure."""
        ...


class HttpNotifier:
    """POSTs ``{orgId, type, data}`` to the dispatcher with a service credential."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def dispatch(self, payload: JobPayload) -> None:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(
                self.url, json=payload.to_wire(), headers=self._headers()
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DispatchError(
                f"Dispatcher request failed: {e}", details={"url": self.url}
            ) from e
        finally:
            if self._owns_client:
                await client.aclose()

        if response.status_code >= 400:
            raise DispatchError(
                f"Dispatcher returned HTTP {response.status_code}",
                details={"url": self.url, "body": response.text[:500]},
            )

        logger.debug(
            "Job dispatched",
            org_id=payload.org_id,
            job_type=payload.type,
            status_code=response.status_code,
        )
