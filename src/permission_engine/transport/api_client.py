"""HTTP client for the authorization backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..core.config import Settings, settings as default_settings
from ..exceptions import TransportError
from ..schemas.permission import (
    BulkPermissionResult,
    PermissionEvaluationResult,
    PermissionSpec,
    UserPermissionSummary,
)
from .circuit_breaker import CircuitBreaker, CircuitStatus

logger = logging.getLogger(__name__)

SUMMARY_PATH = "/permissions/me"
CHECK_PATH = "/permissions/check"
BULK_CHECK_PATH = "/permissions/check-bulk"
CACHE_PATH = "/permissions/my/cache"


class HttpPermissionTransport:
    """Async client wrapping the authorization backend REST API.

    Configuration comes from :class:`Settings`:
        api_url: Backend base URL
        api_token: Optional Bearer token for the current session
        api_timeout: Request timeout in seconds
        max_retries: Attempts per request (2 = one retry)
        retry_base_delay: Exponential backoff base in seconds

    Args:
        settings: Engine settings; the module default when omitted.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``). Its base URL and headers are used as-is.
        breaker: Per-endpoint circuit breaker; one is built from settings
            when omitted.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._settings = settings or default_settings
        self.base_url = self._settings.api_url
        self.token = self._settings.api_token
        self.timeout = self._settings.api_timeout
        self.max_retries = self._settings.max_retries
        self.retry_base_delay = self._settings.retry_base_delay
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self._settings.circuit_failure_threshold,
            cooldown_seconds=self._settings.circuit_cooldown_seconds,
        )
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers: dict[str, str] = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
        return self._client

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Execute an HTTP request with retry on transient failures.

        Retries on connection errors, timeouts and 5xx responses with
        exponential backoff. Client errors (4xx) are not retried and do not
        count against the circuit for *path*.

        Raises:
            CircuitBreakerOpen: if the circuit for *path* is open.
            TransportError: when the request ultimately fails.
        """
        self.breaker.before_request(path)
        client = await self._get_client()
        last_exc: Exception | None = None
        status = 0

        for attempt in range(self.max_retries):
            try:
                resp = await client.request(method, path, **kwargs)
                if resp.status_code < 500:
                    if resp.status_code >= 400:
                        self.breaker.record_success(path)
                        raise TransportError(
                            f"{method} {path} failed with {resp.status_code}",
                            status_code=resp.status_code,
                            endpoint=path,
                        )
                    self.breaker.record_success(path)
                    return resp
                status = resp.status_code
                last_exc = httpx.HTTPStatusError(
                    f"Server error {resp.status_code}",
                    request=resp.request,
                    response=resp,
                )
            except httpx.TransportError as exc:
                last_exc = exc

            if attempt < self.max_retries - 1:
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Request %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    method, path, attempt + 1, self.max_retries, delay, last_exc,
                )
                await asyncio.sleep(delay)

        self.breaker.record_failure(path)
        logger.error("Request %s %s failed after %d attempts: %s", method, path, self.max_retries, last_exc)
        raise TransportError(
            f"{method} {path} failed after {self.max_retries} attempts: {last_exc}",
            status_code=status,
            endpoint=path,
        )

    @staticmethod
    def _payload(resp: httpx.Response) -> Any:
        """Decode the JSON body, unwrapping a ``{"data": ...}`` envelope if present."""
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"Invalid JSON from {resp.request.url.path}: {exc}",
                status_code=resp.status_code,
                endpoint=resp.request.url.path,
            ) from exc
        if isinstance(body, dict) and set(body) == {"data"}:
            return body["data"]
        return body

    async def get_my_permissions(self) -> UserPermissionSummary:
        """Full grant snapshot for the session. Maps to GET /permissions/me."""
        resp = await self._request_with_retry("GET", SUMMARY_PATH)
        try:
            return UserPermissionSummary.model_validate(self._payload(resp))
        except ValidationError as exc:
            raise TransportError(f"Malformed permission summary: {exc}", endpoint=SUMMARY_PATH) from exc

    async def check_permission(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        """Server-adjudicated single check. Maps to POST /permissions/check."""
        resp = await self._request_with_retry("POST", CHECK_PATH, json=spec.to_wire())
        try:
            return PermissionEvaluationResult.model_validate(self._payload(resp))
        except ValidationError as exc:
            raise TransportError(f"Malformed permission result: {exc}", endpoint=CHECK_PATH) from exc

    async def check_bulk_permissions(self, specs: Sequence[PermissionSpec]) -> BulkPermissionResult:
        """Many checks in one round trip. Maps to POST /permissions/check-bulk."""
        if not specs:
            return BulkPermissionResult()
        body = {"permissions": [spec.to_wire() for spec in specs]}
        resp = await self._request_with_retry("POST", BULK_CHECK_PATH, json=body)
        try:
            return BulkPermissionResult.model_validate(self._payload(resp))
        except ValidationError as exc:
            raise TransportError(f"Malformed bulk result: {exc}", endpoint=BULK_CHECK_PATH) from exc

    async def clear_cache(self) -> None:
        """Drop the backend's cached decisions for the session. Maps to DELETE /permissions/my/cache."""
        await self._request_with_retry("DELETE", CACHE_PATH)

    def circuit_status(self) -> dict[str, CircuitStatus]:
        """Endpoints currently failing, with their circuit state."""
        return self.breaker.status()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
