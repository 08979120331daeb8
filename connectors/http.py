"""
Rate-limited HTTP wrapper for provider API calls.

Every call goes through ``RateLimiter.acquire`` first and feeds the
response's rate-limit headers back into the same limiter.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from connectors.rate_limiter import RateLimiter
from utils.errors import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimitedClient:
    def __init__(
        self,
        limiter: RateLimiter,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.limiter = limiter
        self._timeout = timeout
        self._transport = transport

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self.limiter.acquire()

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(method, url, **kwargs)

        self.limiter.update_from_headers(response.headers)

        if response.status_code == 429:
            retry_after = self.limiter.get_retry_after_ms()
            logger.warning("Provider returned 429 for %s, retry after %d ms", url, retry_after)
            raise RateLimitedError("Provider rate limit exceeded", retry_after_ms=retry_after)

        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)
