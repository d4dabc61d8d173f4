"""HTTP client for the remote mail API with retry logic and error handling.

This module provides an async client built on httpx, including:
- Per-resource timeouts (folder listings answer faster than full messages)
- Automatic retry with exponential backoff and jitter for transient errors
- Handling of 429 responses with Retry-After
- Proactive token-bucket rate limiting
- Cooperative cancellation before and after every await

Usage:
    from mailsync.remote.client import ApiClient

    async with ApiClient.from_config(config.api) as client:
        folders = await client.request("Folders", path="/v1/folders")
"""

from __future__ import annotations

import asyncio
import os
import random
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx
import regex

from mailsync.core.errors import RateLimitExceeded, RemoteAPIError
from mailsync.core.logging import get_logger
from mailsync.core.rate_limiter import TokenBucket

if TYPE_CHECKING:
    from mailsync.config_schema import ApiConfig
    from mailsync.core.cancellation import CancellationToken

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]
DEFAULT_TIMEOUT = 30.0

# Resource name -> request timeout in seconds
RESOURCE_TIMEOUTS: dict[str, float] = {
    "Folders": 5.0,
    "MessageList": 10.0,
    "Message": 20.0,
    "MessageUpdate": 15.0,
    "MessageDelete": 10.0,
}

RETRYABLE_STATUS_CODES = frozenset({408, 413, 429, 500, 502, 503, 504})

# Strip file paths, IPs and stack frames from server error messages
_REDACT_PATTERN = regex.compile(r"\b(?:/[\w./-]+|\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}|at\s+\S+)\b")
_REDACT_TIMEOUT = 1.0
MAX_ERROR_MESSAGE_LENGTH = 500


def _redact(message: str) -> str:
    try:
        message = _REDACT_PATTERN.sub("[redacted]", message, timeout=_REDACT_TIMEOUT)
    except TimeoutError:
        message = "Request failed"
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def _clean_params(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop None and empty-string query values; render booleans as true/false."""
    if not params:
        return None
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        cleaned[key] = ("true" if value else "false") if isinstance(value, bool) else value
    return cleaned


class ApiClient:
    """Async mail API client.

    Attributes:
        base_url: API root, e.g. ``https://mail.example.com``
        max_retries: Maximum number of retry attempts
        retry_delays: Backoff delays (seconds) for each retry

    Example:
        client = ApiClient("https://mail.example.com", api_token="...")

        page = await client.request(
            "MessageList",
            path="/v1/messages",
            params={"folder": "INBOX", "page": 1, "limit": 50},
        )
        await client.request(
            "MessageUpdate", method="PUT", path="/v1/messages/abc", json={"folder": "Archive"}
        )
    """

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        rate_per_second: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root URL
            api_token: Bearer token; requests are unauthenticated without one
            max_retries: Retries for transient failures
            retry_delays: Backoff delays in seconds for each retry
            default_timeout: Timeout for resources without a specific one
            rate_per_second: Proactive request rate limit
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.default_timeout = default_timeout

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, headers=headers, transport=transport
        )
        # Per-client bucket: several clients in one process must not share a budget
        capacity = max(1, int(rate_per_second))
        self._rate_bucket = TokenBucket(rate=rate_per_second, capacity=capacity)

        logger.debug(
            "api_client_initialized",
            base_url=self.base_url,
            max_retries=self.max_retries,
            authenticated=api_token is not None,
        )

    @classmethod
    def from_config(
        cls, config: ApiConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> ApiClient:
        """Build a client from the ``api`` config section.

        The bearer token is read from the environment variable named by
        ``config.token_env``.
        """
        api_token = os.environ.get(config.token_env) or None
        if api_token is None:
            logger.warning("api_token_missing", env_var=config.token_env)
        return cls(
            config.base_url,
            api_token,
            max_retries=config.max_retries,
            default_timeout=config.timeout_seconds,
            rate_per_second=config.rate_per_second,
            transport=transport,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def timeout_for(self, resource: str) -> float:
        return RESOURCE_TIMEOUTS.get(resource, self.default_timeout)

    def _raise_for_response(self, response: httpx.Response, resource: str, method: str) -> None:
        """Convert an error response into RemoteAPIError (or RateLimitExceeded).

        Raises:
            RemoteAPIError: With status and error code from the body
            RateLimitExceeded: For 429 after retries are exhausted
        """
        error_code = None
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            raw_message = data.get("message") or data.get("error") or "Request failed"
            error_code = data.get("code")
        else:
            raw_message = response.text or f"HTTP {response.status_code}"
        message = _redact(str(raw_message))

        logger.error(
            "api_error",
            resource=resource,
            method=method,
            status_code=response.status_code,
            error_code=error_code,
            error_message=message[:200],
        )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Rate limit exceeded (429) for {resource}. Retry after: {retry_after} seconds. "
                "Lower api.rate_per_second in config.yaml."
            )
        if response.status_code == 401:
            raise RemoteAPIError(
                f"Authentication failed (401): {message}. "
                "Check that the API token environment variable is set and valid.",
                status_code=401,
                error_code=error_code,
            )
        if response.status_code == 404:
            raise RemoteAPIError(
                f"Not found (404) for {resource}: {message}",
                status_code=404,
                error_code=error_code,
            )
        raise RemoteAPIError(
            f"Mail API error ({response.status_code}) for {resource}: {message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def _should_retry(self, status_code: int, attempt: int) -> bool:
        return attempt < self.max_retries and status_code in RETRYABLE_STATUS_CODES

    def _get_retry_delay(self, response: httpx.Response | None, attempt: int) -> float:
        """Backoff delay with ±20% jitter; honours Retry-After on 429."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    return base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                except ValueError:
                    pass

        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    async def _sleep(self, delay: float, cancel_token: CancellationToken | None) -> None:
        if cancel_token is None:
            await asyncio.sleep(delay)
        else:
            await cancel_token.guard(asyncio.sleep(delay))

    async def request(
        self,
        resource: str,
        *,
        path: str,
        method: str = "GET",
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """Make a request with retry logic.

        Args:
            resource: Resource name used for timeout selection and logging
                (Folders, MessageList, Message, MessageUpdate, MessageDelete)
            path: URL path relative to base_url
            method: HTTP method
            params: Query parameters; None and empty values are dropped
            json: JSON body
            cancel_token: Aborts the request (and any retry sleep) when cancelled

        Returns:
            Parsed JSON body, or None for empty/non-JSON responses

        Raises:
            OperationCancelled: If cancel_token fires
            RemoteAPIError: For API errors and exhausted transport failures
            RateLimitExceeded: When 429s persist or the local bucket would block too long
        """
        timeout = self.timeout_for(resource)
        query = _clean_params(params)
        last_response: httpx.Response | None = None

        for attempt in range(self.max_retries + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            await self._rate_bucket.consume()

            logger.debug(
                "api_request",
                resource=resource,
                method=method,
                path=path,
                attempt=attempt + 1,
            )

            send = self._client.request(method, path, params=query, json=json, timeout=timeout)
            try:
                if cancel_token is None:
                    response = await send
                else:
                    response = await cancel_token.guard(send)
            except httpx.TimeoutException:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "api_request_timeout_retrying",
                        resource=resource,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    await self._sleep(delay, cancel_token)
                    continue
                raise RemoteAPIError(
                    f"Request to {path} timed out after {timeout}s and {self.max_retries} retries",
                    status_code=408,
                ) from None
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "api_connection_error_retrying",
                        resource=resource,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    await self._sleep(delay, cancel_token)
                    continue
                raise RemoteAPIError(
                    f"Connection to the mail API failed: {e}. "
                    f"Check that {self.base_url} is reachable.",
                    status_code=None,
                ) from e

            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            last_response = response

            if response.status_code < 400:
                if response.status_code == 204 or not response.content:
                    return None
                if "application/json" not in response.headers.get("content-type", ""):
                    return None
                return response.json()

            if self._should_retry(response.status_code, attempt):
                delay = self._get_retry_delay(response, attempt)
                logger.warning(
                    "api_request_retrying",
                    resource=resource,
                    method=method,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                )
                await self._sleep(delay, cancel_token)
                continue

            self._raise_for_response(response, resource, method)

        # Only reachable when the final attempt was itself retryable
        if last_response is not None:
            self._raise_for_response(last_response, resource, method)
        raise RemoteAPIError(f"Request to {path} failed after {self.max_retries} retries")
