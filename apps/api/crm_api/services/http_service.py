"""HTTP helpers for provider calls: short timeouts, bounded retries, typed errors."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

from crm_api.core.config import settings
from crm_api.core.errors import (
    IntegrationError,
    InsufficientPermission,
    ProviderUnreachable,
    TokenExpired,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def provider_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """AsyncClient with the provider timeout applied to connect, read and write."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS),
        transport=transport,
    )


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """
    Execute an HTTP request with exponential backoff retries.

    Transport errors (including timeouts) that survive every attempt are
    raised as ProviderUnreachable.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise ProviderUnreachable(f"{type(exc).__name__}: {exc}") from exc
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("Provider request failed, retrying (%s)", type(exc).__name__)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("Provider request returned %s, retrying", response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or "")[:200]
    if isinstance(error, str):
        return str(body.get("error_description") or error)[:200]
    return ""


def raise_for_provider_status(
    response: httpx.Response,
    action: str,
    client_error: type[IntegrationError] = IntegrationError,
) -> None:
    """
    Translate a non-2xx provider response into the error taxonomy.

    401 → TokenExpired, 403 → InsufficientPermission, 429/5xx →
    ProviderUnreachable, any other 4xx → ``client_error``.
    """
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = _error_message(response)
    message = f"{action} failed ({status})" + (f": {detail}" if detail else "")
    if status == 401:
        raise TokenExpired(message)
    if status == 403:
        raise InsufficientPermission(message)
    if status == 429 or status >= 500:
        raise ProviderUnreachable(message)
    raise client_error(message)
