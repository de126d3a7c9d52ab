"""HTTP transport for the AmoebaCRM REST API.

AmoebaTransport sends one request per call through a shared httpx.AsyncClient:
- Bearer authorization header from the configured access token
- JSON or form encoding of the parameters (RequestSettings.encode_parameters)
- tenacity retry with exponential backoff on timeouts and connect errors only
  (POST only when the connection was never established);
  a non-success status is an answer, never retried
- Only 200/201/202 succeed, anything else raises RemoteRejection with the
  message pulled out of the error body
"""

from __future__ import annotations

import json
import time
from typing import Any, Literal, NamedTuple

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.amoebacrm.core.monitoring import (
    remote_request_duration_seconds,
    remote_requests_total,
)
from src.amoebacrm.crm.errors import ConnectorError, RemoteRejection, RemoteTimeout

logger = structlog.get_logger(__name__)

SUCCESS_CODES = frozenset({200, 201, 202})

# A request that timed out after being sent may have been applied, so POST
# (create) only retries when the connection was never established.
_RETRYABLE = (httpx.TimeoutException, httpx.ConnectError)
_RETRYABLE_UNSENT = (httpx.ConnectTimeout, httpx.ConnectError)
_NON_IDEMPOTENT = frozenset({"POST"})


class RequestSettings(BaseModel):
    """Per-request encoding options."""

    encode_parameters: Literal["json", "form"] = "json"
    return_raw: bool = False


class RawResponse(NamedTuple):
    """Unparsed response returned when RequestSettings.return_raw is set."""

    code: int
    body: str

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


def extract_error_message(body: Any, fallback: str) -> str:
    """Pick a human-readable message out of an AmoebaCRM error body.

    Looks at ``message``, then ``error``, then the first entry of ``errors``.
    Nested ``{"message": ...}`` objects are unwrapped.
    """
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                first = first.get("message") or first
            return str(first)
    return fallback


class AmoebaTransport:
    """Async HTTP transport with retry, auth and status handling.

    Args:
        access_token: OAuth2 access token; empty means unauthenticated.
        timeout: Per-request timeout in seconds.
        max_retries: Attempts for timeouts/connect errors before giving up.
        client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport-backed client here).
        retry_wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        access_token: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._access_token = access_token
        self._max_retries = max(1, max_retries)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def has_token(self) -> bool:
        return bool(self._access_token)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def request(
        self,
        url: str,
        parameters: dict[str, Any] | None = None,
        method: str = "GET",
        settings: RequestSettings | None = None,
    ) -> Any:
        """Send one request and return the parsed JSON body.

        Args:
            url: Absolute endpoint URL (may already carry a query string).
            parameters: Query parameters for GET (merged into the URL's query
                string), request body otherwise.
            method: HTTP method.
            settings: Encoding options; defaults to JSON, parsed result.

        Returns:
            Parsed JSON payload, or RawResponse when ``return_raw`` is set.

        Raises:
            RemoteRejection: On any status other than 200/201/202.
            RemoteTimeout: When every attempt timed out or failed to connect.
            ConnectorError: On any other transport-level failure.
        """
        settings = settings or RequestSettings()
        method = method.upper()
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if parameters:
            if method == "GET":
                url = str(httpx.URL(url).copy_merge_params(parameters))
            elif settings.encode_parameters == "json":
                kwargs["json"] = parameters
            else:
                kwargs["data"] = parameters

        response = await self._send(method, url, kwargs)

        if response.status_code not in SUCCESS_CODES:
            body = _parse_json(response)
            message = extract_error_message(body, response.reason_phrase or "Request failed")
            logger.warning(
                "transport.request_rejected",
                method=method,
                url=url,
                status_code=response.status_code,
                message=message,
            )
            raise RemoteRejection(message, status_code=response.status_code)

        if settings.return_raw:
            return RawResponse(response.status_code, response.text)
        return _parse_json(response)

    async def _send(self, method: str, url: str, kwargs: dict[str, Any]) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=self._retry_wait,
            retry=retry_if_exception_type(
                _RETRYABLE_UNSENT if method in _NON_IDEMPOTENT else _RETRYABLE
            ),
        )
        start = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.request(method, url, **kwargs)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            remote_requests_total.labels(method=method, status="timeout").inc()
            logger.error(
                "transport.request_timeout",
                method=method,
                url=url,
                attempts=self._max_retries,
                error=str(cause),
            )
            raise RemoteTimeout(f"{method} {url} did not complete: {cause}") from cause
        except httpx.TimeoutException as exc:
            remote_requests_total.labels(method=method, status="timeout").inc()
            logger.error(
                "transport.request_timeout",
                method=method,
                url=url,
                attempts=1,
                error=str(exc),
            )
            raise RemoteTimeout(f"{method} {url} did not complete: {exc}") from exc
        except httpx.HTTPError as exc:
            remote_requests_total.labels(method=method, status="error").inc()
            logger.error("transport.request_failed", method=method, url=url, error=str(exc))
            raise ConnectorError(f"{method} {url} failed: {exc}") from exc
        finally:
            remote_request_duration_seconds.labels(method=method).observe(
                time.perf_counter() - start
            )

        remote_requests_total.labels(method=method, status=str(response.status_code)).inc()
        return response

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()


def _parse_json(response: httpx.Response) -> Any:
    """Decode a JSON body; an empty or non-JSON body gives None."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None
