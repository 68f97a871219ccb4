"""Client for the hypervisor management API.

Thin RPC boundary: every call maps to one HTTP request and raises a
classified HypervisorError on failure. The client keeps no state besides the
pooled connection and never re-checks resource state before acting; that is
the reconciler's job.
"""

from __future__ import annotations

import logging
import time

import httpx

from provisioner.config import settings
from provisioner.errors import (
    AuthorizationError,
    FatalApiError,
    HypervisorError,
    ResourceNotFound,
    TransientApiError,
)
from provisioner.metrics import hypervisor_request_duration
from provisioner.schemas import ResourceDescriptor
from provisioner.state import ObservedStatus

logger = logging.getLogger(__name__)

# Request timeout and rate limiting are retried like a 5xx
TRANSIENT_HTTP_CODES = {408, 429}


def classify_status_error(
    response: httpx.Response,
    resource_id: int | None = None,
) -> HypervisorError:
    """Map a non-2xx response onto the error taxonomy."""
    status_code = response.status_code
    body = response.text[:500]
    message = f"Hypervisor returned HTTP {status_code}"
    if body:
        message = f"{message}: {body}"

    if status_code >= 500 or status_code in TRANSIENT_HTTP_CODES:
        return TransientApiError(message, resource_id, status_code=status_code)
    if status_code in (401, 403):
        return AuthorizationError(message, resource_id, status_code=status_code)
    if status_code == 404:
        return ResourceNotFound(message, resource_id, status_code=status_code)
    return FatalApiError(message, resource_id, status_code=status_code)


def parse_status(value: str | None) -> ObservedStatus:
    """Map a status string from the API onto ObservedStatus."""
    if not value:
        return ObservedStatus.UNKNOWN
    try:
        return ObservedStatus(value.lower())
    except ValueError:
        return ObservedStatus.UNKNOWN


class HypervisorClient:
    """Async client for one hypervisor node.

    Usage:
        async with HypervisorClient() as client:
            status = await client.query(201)
    """

    def __init__(
        self,
        base_url: str | None = None,
        node: str | None = None,
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        mutation_timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.hypervisor_url).rstrip("/")
        self.node = node or settings.hypervisor_node
        if token is None:
            token = settings.api_token
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        # An explicit timeout applies to every call unless mutations get their own
        self.query_timeout = timeout or settings.http_timeout
        self.mutation_timeout = mutation_timeout or timeout or settings.mutation_timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            timeout=httpx.Timeout(self.query_timeout),
        )

    async def __aenter__(self) -> HypervisorClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_client:
            await self._http.aclose()

    def _resources_url(self) -> str:
        return f"{self.base_url}/nodes/{self.node}/resources"

    def _resource_url(self, resource_id: int) -> str:
        return f"{self._resources_url()}/{resource_id}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        resource_id: int | None,
        json_body: dict | None = None,
        params: dict | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Issue one request; raise a classified HypervisorError on failure."""
        status = "success"
        t0 = time.monotonic()
        logger.debug(
            "Hypervisor request",
            extra={
                "event": "hypervisor_request",
                "operation": operation,
                "node": self.node,
                "resource_id": resource_id,
            },
        )
        try:
            response = await self._http.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=self._headers,
                timeout=timeout,
            )
        except httpx.TransportError as e:
            # Timeouts, refused or reset connections, protocol errors
            status = "transient"
            raise TransientApiError(
                f"{operation} request failed: {type(e).__name__}: {e}", resource_id
            ) from e
        else:
            if response.is_error:
                error = classify_status_error(response, resource_id)
                status = "transient" if error.retriable else "error"
                raise error
            return response
        finally:
            elapsed = time.monotonic() - t0
            hypervisor_request_duration.labels(operation=operation, status=status).observe(elapsed)
            logger.info(
                "Hypervisor response",
                extra={
                    "event": "hypervisor_response",
                    "operation": operation,
                    "node": self.node,
                    "resource_id": resource_id,
                    "status": status,
                    "duration_ms": int(elapsed * 1000),
                },
            )

    async def query(self, resource_id: int) -> ObservedStatus:
        """Return the observed status. A missing resource is ABSENT, not an error."""
        try:
            response = await self._request(
                "GET",
                f"{self._resource_url(resource_id)}/status",
                operation="query",
                resource_id=resource_id,
                timeout=self.query_timeout,
            )
        except ResourceNotFound:
            return ObservedStatus.ABSENT
        try:
            body = response.json()
        except ValueError as e:
            raise TransientApiError(f"Malformed status response: {e}", resource_id) from e
        return parse_status(body.get("status") if isinstance(body, dict) else None)

    async def describe(self, resource_id: int) -> dict:
        """Return the configuration the hypervisor holds for a resource."""
        response = await self._request(
            "GET",
            f"{self._resource_url(resource_id)}/config",
            operation="describe",
            resource_id=resource_id,
            timeout=self.query_timeout,
        )
        try:
            body = response.json()
        except ValueError as e:
            raise TransientApiError(f"Malformed config response: {e}", resource_id) from e
        return body if isinstance(body, dict) else {}

    async def create(self, descriptor: ResourceDescriptor) -> None:
        """Submit a resource for provisioning. Completion is observed via query()."""
        await self._request(
            "POST",
            self._resources_url(),
            operation="create",
            resource_id=descriptor.id,
            json_body=descriptor.to_payload(),
            timeout=self.mutation_timeout,
        )

    async def start(self, resource_id: int) -> None:
        await self._request(
            "POST",
            f"{self._resource_url(resource_id)}/start",
            operation="start",
            resource_id=resource_id,
            timeout=self.mutation_timeout,
        )

    async def stop(self, resource_id: int, graceful: bool = True) -> None:
        await self._request(
            "POST",
            f"{self._resource_url(resource_id)}/stop",
            operation="stop" if graceful else "force_stop",
            resource_id=resource_id,
            params={"graceful": "true" if graceful else "false"},
            timeout=self.mutation_timeout,
        )

    async def delete(self, resource_id: int) -> None:
        await self._request(
            "DELETE",
            self._resource_url(resource_id),
            operation="delete",
            resource_id=resource_id,
            timeout=self.mutation_timeout,
        )
