"""HTTP transport for Autodesk Platform Services.

Every remote call goes through :meth:`ApsTransport.request`, which is the
single place where HTTP outcomes are classified:

* network failures and 5xx -> :class:`TransientError`
* 429 -> :class:`RateLimitError`
* other 4xx -> :class:`PermanentError`

Callers decide what each class means for their step (retry, treat as
pending, fail fast).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rvtmeta.exceptions import PermanentError, RateLimitError, TransientError

logger = logging.getLogger(__name__)

# Fields APS services use for human-readable error detail, most specific first.
_DIAGNOSTIC_FIELDS = ("diagnostic", "developerMessage", "errorMessage", "reason", "message", "detail")


def extract_diagnostic(response: httpx.Response) -> str:
    """Pull the remote error message out of an APS error body."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in _DIAGNOSTIC_FIELDS:
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return str(first.get("detail") or first.get("title") or first)

    text = response.text.strip()
    return text[:500] if text else response.reason_phrase


def transient_retrying(
    max_attempts: int, min_wait: float = 1.0, max_wait: float = 10.0
) -> AsyncRetrying:
    """Retry policy for idempotent calls: transient errors only, bounded."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )


class ApsTransport:
    """Thin async wrapper around ``httpx.AsyncClient``.

    Usage::

        transport = ApsTransport("https://developer.api.autodesk.com")
        response = await transport.request("GET", "/oss/v2/buckets", token=token)
        await transport.close()

    Args:
        base_url: Service root; relative paths are resolved against it.
        timeout: Per-request timeout in seconds.
        client: Pre-built client (tests pass one with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and classify the outcome.

        Args:
            method: HTTP method.
            url: Path relative to ``base_url`` or an absolute (signed) URL.
            token: Bearer token; omitted for signed URLs.
            headers: Extra headers.
            **kwargs: Passed to ``httpx.AsyncClient.request`` (json, data,
                content, params, auth).

        Returns:
            The response for any 1xx-3xx status.

        Raises:
            TransientError: Network failure or 5xx.
            RateLimitError: 429.
            PermanentError: Other 4xx.
        """
        if url.startswith("/"):
            url = self.base_url + url
        send_headers = dict(headers or {})
        if token is not None:
            send_headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, url, headers=send_headers, **kwargs)
        except httpx.TransportError as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            raise TransientError(f"{method} {url}: {exc.__class__.__name__}: {exc}") from exc

        status = response.status_code
        if status < 400:
            logger.debug("%s %s -> %d", method, url, status)
            return response

        diagnostic = extract_diagnostic(response)
        message = f"{method} {url} -> {status}: {diagnostic}"
        if status == 429:
            raise RateLimitError(message, status_code=status, diagnostic=diagnostic)
        if status >= 500:
            raise TransientError(message, status_code=status, diagnostic=diagnostic)
        raise PermanentError(message, status_code=status, diagnostic=diagnostic)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ApsTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
