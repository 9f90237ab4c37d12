"""Streaming HTTP transport for the OpenRouter Chat Completions API.

Direct httpx calls, no provider SDK.  The transport only moves bytes;
frame decoding happens in frames.py.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from conduit.api.cancellation import CancelToken
from conduit.config import Settings
from conduit.errors import TransportError

logger = logging.getLogger(__name__)

# Statuses worth one retry before any byte of the body is consumed
_RETRY_STATUSES = frozenset({429, 500, 502, 503})
_MAX_RETRY_AFTER = 30.0
_MAX_ERROR_BODY = 2000


class OpenRouterClient:
    """Owns the httpx client shared by every run in the process."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        if settings.openrouter_api_key:
            headers["authorization"] = f"Bearer {settings.openrouter_api_key}"
        else:
            logger.warning("OPENROUTER_API_KEY is not set -- API calls will fail")
        if settings.app_referer:
            headers["http-referer"] = settings.app_referer
        if settings.app_title:
            headers["x-title"] = settings.app_title

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (base_url: %s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def stream_completion(
        self,
        payload: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        """POST a streaming completion request and yield raw body bytes.

        Raises TransportError on non-2xx responses (carrying status and
        body) and on connection failures.  Leaving the generator early,
        including through task cancellation, closes the response.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        body = {**payload, "stream": True}

        for attempt in range(2):  # initial + 1 retry
            if token is not None:
                token.raise_if_cancelled()
            try:
                async with self._http.stream("POST", "/chat/completions", json=body) as response:
                    if response.status_code >= 300:
                        error_body = (await response.aread()).decode("utf-8", errors="replace")
                        if response.status_code in _RETRY_STATUSES and attempt == 0:
                            retry_after = _retry_after(response)
                            logger.warning(
                                "API error %d, retrying in %.1fs: %.200s",
                                response.status_code,
                                retry_after,
                                error_body,
                            )
                            await asyncio.sleep(retry_after)
                            continue
                        raise TransportError(
                            f"OpenRouter API error: {response.status_code} "
                            f"{response.reason_phrase}\n{error_body[:_MAX_ERROR_BODY]}",
                            status_code=response.status_code,
                            body=error_body,
                        )

                    async for data in response.aiter_bytes():
                        yield data
                    return
            except httpx.TimeoutException as e:
                raise TransportError(f"API request timed out: {e}", cause=e) from e
            except httpx.HTTPError as e:
                raise TransportError(f"HTTP error: {e}", cause=e) from e


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return max(0.0, min(value, _MAX_RETRY_AFTER))
