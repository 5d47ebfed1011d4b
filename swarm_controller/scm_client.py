"""
Shared HTTP client for source-control provider APIs.

One retry policy for all providers, driven by tenacity:
- 429: wait for Retry-After (default 60s), then retry
- 5xx and transport errors: exponential backoff (2s, 4s, ...)
- other 4xx: fail immediately with SCMRejectedError
- empty body: {}
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import SCMAPIError, SCMRejectedError

logger = logging.getLogger("scm_client")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_AFTER_SECONDS = 60
MAX_BACKOFF_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 30.0

_backoff = wait_exponential(multiplier=2, max=MAX_BACKOFF_SECONDS)


def _is_retryable(error: BaseException) -> bool:
    return getattr(error, "retryable", False)


def _wait(retry_state: RetryCallState) -> float:
    """Retry-After when the provider sent one, exponential backoff otherwise."""
    error = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return retry_after
    return _backoff(retry_state)


class SCMHttpClient:
    def __init__(
        self,
        base_url: str,
        auth_headers: Dict[str, str],
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth_headers = auth_headers
        self._max_retries = max(1, max_retries)
        self._transport = transport
        self._sleep = sleep

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        max_retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Send one API request with retries. Raises SCMAPIError on final failure."""
        url = f"{self.base_url}{path}"
        request_headers = {"Content-Type": "application/json", **self._auth_headers, **(headers or {})}

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.warning(f"{method} {url} failed ({error.message}), attempt {retry_state.attempt_number}, "
                           f"retrying in {retry_state.next_action.sleep:g}s")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, max_retries or self._max_retries)),
            wait=_wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=self._transport) as client:
            return await retrying(self._send, client, method, url, body, request_headers)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            response = await client.request(method, url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise SCMAPIError(0, "Transport error", str(e)) from e

        if response.status_code == 429:
            raise SCMAPIError(
                429,
                response.reason_phrase,
                response.text,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 500:
            raise SCMAPIError(response.status_code, response.reason_phrase, response.text)
        if response.status_code >= 400:
            raise SCMRejectedError(response.status_code, response.reason_phrase, response.text)

        if not response.text:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError:
            raise SCMAPIError(response.status_code, "Invalid JSON", response.text[:500])


def _parse_retry_after(value: Optional[str]) -> int:
    try:
        return max(0, int(value)) if value else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
