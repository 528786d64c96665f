"""
Shared HTTP helpers with timeouts and optional retries for external systems.
Used by the ERP session manager, the B2B auth bridge/data client and notifications.
Every helper accepts an optional httpx transport (tests pass httpx.MockTransport).
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from backoffice.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = settings.HTTP_TIMEOUT_SEC
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds


async def _sleep_backoff(attempt: int, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await sleep(min(delay, 10.0))


def build_client(
    *,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    follow_redirects: bool = False,
) -> httpx.AsyncClient:
    """AsyncClient with the project's defaults. Redirects are not followed (ERP login relies on seeing 302)."""
    return httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=follow_redirects)


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = (502, 503, 504),
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and optional retries for server/network errors.
    Retries only on retry_on status codes and on connection errors.
    """
    last_exc: Optional[Exception] = None
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with build_client(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                await _sleep_backoff(attempt + 1, sleep)
                continue
            return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            last_exc = e
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1, sleep)
            else:
                raise
    if last_exc:
        raise last_exc
    return resp  # type: ignore


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """GET with retries on 502/503/504 and connection errors."""
    return await request_with_retry(
        "GET",
        url,
        params=params,
        headers=headers,
        timeout=timeout,
        max_retries=max_retries,
        transport=transport,
        sleep=sleep,
    )


async def post_no_retry(
    url: str,
    *,
    json: Optional[dict] = None,
    data: Optional[dict] = None,
    content: Optional[str] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """POST with no retries (non-idempotent). Uses single attempt with timeout."""
    kwargs: dict[str, Any] = {"headers": headers or {}}
    if content is not None:
        kwargs["content"] = content
    elif data is not None:
        kwargs["data"] = data
    else:
        kwargs["json"] = json or {}
    async with build_client(timeout=timeout, transport=transport) as client:
        return await client.post(url, **kwargs)
