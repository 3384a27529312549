"""
HTTP client for the power-monitor ingestion API.

Posts single readings, batches of queued readings and heartbeats to the
server with bearer-token authentication, and performs the one-time
registration handshake. Every call goes through a RetryPolicy that retries
connection-level failures and 5xx responses (3 attempts, 5 s apart); 4xx
responses and envelopes with ``success: false`` are permanent and surface
immediately as ClientError.

Endpoints (relative to ``base_url + api_prefix``):
- POST /auth/collector/register
- POST /collector/data
- POST /collector/data/batch
- POST /collector/heartbeat
- GET  /collector/config

CHANGELOG:
- 2026-10-19: Map every httpx RequestError to NetworkError; stop retrying on shutdown (STORY-114)
- 2026-10-15: Add fetch_config and single-shot check_connection (STORY-110)
- 2026-10-14: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from collector.src.errors import ClientError, NetworkError, ServerError, UploadError
from collector.src.models import (
    Credentials,
    Reading,
    RegistrationMetadata,
    RegistrationResult,
)
from collector.src.retry import RetryPolicy

logger = logging.getLogger(__name__)

UPLOAD_ATTEMPTS: int = 3
"""Total attempts per API call."""

UPLOAD_RETRY_DELAY_S: float = 5.0
"""Fixed pause between two API attempts."""

DEFAULT_TIMEOUT_S: float = 30.0
"""Per-request timeout in seconds."""


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkError, ServerError))


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=UPLOAD_ATTEMPTS,
    delay_s=UPLOAD_RETRY_DELAY_S,
    retry_on=_is_transient,
    name="API request",
)


def _error_message(response: httpx.Response) -> str:
    """Best-effort human-readable message from an error response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class UploadClient:
    """Client for the ingestion API.

    A fresh ``httpx.AsyncClient`` is created per request so that a broken
    connection never outlives the call that hit it.

    Args:
        base_url: Server root, e.g. ``http://power.example.com:8080``.
        api_prefix: Path prefix of the API routes (default ``/api``).
        timeout_s: Per-request timeout.
        version: Collector version sent in the User-Agent header.
        retry_policy: Override of the default 3 x 5 s policy.
        stop_event: When set, pending retries are abandoned and the last
            error is raised at once.
    """

    def __init__(
        self,
        base_url: str,
        api_prefix: str = "/api",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        version: str = "1.0.0",
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_prefix = api_prefix.rstrip("/")
        self._timeout_s = timeout_s
        self._user_agent = f"PowerCollector/{version}"
        self._retry_policy = retry_policy
        self._stop_event = stop_event
        self._credentials: Credentials | None = None

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    def set_credentials(self, credentials: Credentials) -> None:
        """Use *credentials* for every subsequent authenticated call."""
        self._credentials = credentials

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def register(self, code: str, metadata: RegistrationMetadata) -> RegistrationResult:
        """Exchange a registration code for a token and server config.

        Raises:
            UploadError: If the server rejects the code or cannot be reached.
        """
        body = {"registration_code": code, **metadata.model_dump()}
        envelope = await self._send("POST", "/auth/collector/register", json=body, auth=False)
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise ClientError(200, "registration response carries no data")
        return RegistrationResult.model_validate(data)

    async def upload_one(self, reading: Reading) -> None:
        """Upload a single reading in real time."""
        await self._send("POST", "/collector/data", json=reading.to_api())

    async def upload_batch(self, readings: list[Reading]) -> None:
        """Upload *readings* in order as one batch. Empty input is a no-op."""
        if not readings:
            return
        body = {
            "collector_id": self._collector_id(),
            "data": [reading.to_api() for reading in readings],
        }
        await self._send("POST", "/collector/data/batch", json=body)
        logger.debug("Uploaded batch of %d readings", len(readings))

    async def heartbeat(self, status: str, version: str) -> None:
        """Send a liveness signal."""
        await self._send("POST", "/collector/heartbeat", json={"status": status, "version": version})

    async def fetch_config(self) -> dict[str, Any]:
        """Return the collector configuration stored on the server.

        Raises:
            ClientError: If the response carries no config object.
        """
        envelope = await self._send("GET", "/collector/config")
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise ClientError(200, "get config failed: invalid data format")
        return data

    async def check_connection(self) -> None:
        """Single-attempt connectivity check against the config endpoint.

        Raises:
            UploadError: If the server is unreachable or answers >= 400.
        """
        response = await self._request("GET", "/collector/config", auth=True)
        self._raise_for_status(response)

    async def is_reachable(self) -> bool:
        """Return True when :meth:`check_connection` succeeds."""
        try:
            await self.check_connection()
        except UploadError as exc:
            logger.warning("Ingestion API not reachable: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _collector_id(self) -> str:
        return self._credentials.collector_id if self._credentials else ""

    def _url(self, endpoint: str) -> str:
        return f"{self._base_url}{self._api_prefix}{endpoint}"

    def _headers(self, auth: bool) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if auth and self._credentials is not None:
            headers["Authorization"] = f"Bearer {self._credentials.token}"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        """One HTTP exchange; any request-level failure becomes NetworkError."""
        url = self._url(endpoint)
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                return await client.request(method, url, json=json, headers=self._headers(auth))
        except httpx.RequestError as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status >= 500:
            raise ServerError(status, _error_message(response))
        if status >= 400:
            raise ClientError(status, _error_message(response))

    async def _send(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        auth: bool = True,
    ) -> dict[str, Any]:
        """Request with retries; returns the decoded success envelope."""

        async def attempt() -> dict[str, Any]:
            response = await self._request(method, endpoint, json=json, auth=auth)
            self._raise_for_status(response)
            try:
                envelope = response.json()
            except ValueError as exc:
                raise ClientError(response.status_code, "response is not valid JSON") from exc
            if not isinstance(envelope, dict) or not envelope.get("success", False):
                message = envelope.get("message", "") if isinstance(envelope, dict) else ""
                raise ClientError(response.status_code, f"request rejected: {message}")
            return envelope

        return await self._retry_policy.run(attempt, stop=self._stop_event)
