"""
Client for the managed data backend.

The backend exposes its query and action functions over HTTP:

    POST {BACKEND_URL}/api/query  (or /api/action)
    {"path": "conversations:get", "args": {...}, "format": "json"}

and answers with ``{"status": "success", "value": ...}`` or
``{"status": "error", "errorMessage": ...}``. Queries run as the calling
user when their token is forwarded; otherwise the deploy key is used.
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from converse.config import Settings
from converse.exceptions import BackendError
from converse.logging import get_logger

logger = get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    """Transport failures, rate limits and 5xx responses are retried."""
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


class BackendClient:
    """Async client for backend query RPCs."""

    def __init__(
        self,
        base_url: str,
        deploy_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize backend client.

        Args:
            base_url: Backend deployment URL.
            deploy_key: Admin key used when no user token is given.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.deploy_key = deploy_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BackendClient:
        return cls(
            base_url=settings.backend_url,
            deploy_key=settings.BACKEND_DEPLOY_KEY,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _auth_header(self, token: str | None) -> dict[str, str]:
        if token:
            return {"Authorization": f"Bearer {token}"}
        if self.deploy_key:
            return {"Authorization": f"Convex {self.deploy_key}"}
        return {}

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def _post(self, endpoint: str, payload: dict[str, Any], token: str | None) -> httpx.Response:
        """POST with retries on transient failures."""
        client = await self._get_client()
        response = await client.post(endpoint, json=payload, headers=self._auth_header(token))
        if response.status_code == 429 or response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _call(
        self,
        kind: str,
        path: str,
        args: dict[str, Any] | None,
        token: str | None,
    ) -> Any:
        payload = {"path": path, "args": args or {}, "format": "json"}
        try:
            response = await self._post(f"/api/{kind}", payload, token)
        except httpx.HTTPStatusError as e:
            raise BackendError(
                f"Backend {kind} failed",
                context={"path": path, "status_code": e.response.status_code},
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise BackendError(
                f"Backend unreachable during {kind}",
                context={"path": path, "error": str(e)},
            ) from e

        try:
            body = response.json()
        except ValueError as e:
            raise BackendError(
                "Backend returned invalid JSON",
                context={"path": path, "status_code": response.status_code},
                status_code=response.status_code,
            ) from e

        if response.status_code >= 400 or body.get("status") != "success":
            message = body.get("errorMessage") or f"HTTP {response.status_code}"
            raise BackendError(
                f"Backend {kind} returned an error: {message}",
                context={"path": path, "status_code": response.status_code},
                status_code=response.status_code,
            )

        logger.debug("Backend call succeeded", kind=kind, path=path)
        return body.get("value")

    async def query(
        self,
        path: str,
        args: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        """Run a backend query function.

        Args:
            path: Function path, "module:function".
            args: Function arguments.
            token: Caller's auth token, forwarded so the query runs as the caller.

        Returns:
            The function's return value.

        Raises:
            BackendError: If the backend is unreachable or the function failed.
        """
        return await self._call("query", path, args, token)

    async def action(
        self,
        path: str,
        args: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        """Run a backend action, for functions that reach outside the backend
        (link preview fetching). Same body and errors as query()."""
        return await self._call("action", path, args, token)
