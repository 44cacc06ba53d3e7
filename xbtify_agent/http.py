"""
Shared async HTTP client for the agent's outbound integrations.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class HttpClient:
    """Thin wrapper around httpx for API-key authenticated services."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
        timeout: float = 30.0,
        base_delay: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._base_delay = base_delay
        headers = {api_key_header: api_key} if api_key else {}
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        _retries: int = 4,
        _attempt: int = 0,
    ) -> Any:
        """Make a request, retrying 429 responses with exponential backoff.

        Up to 4 retries, ``base_delay`` doubling per attempt (capped at 60s),
        never shorter than the server's ``Retry-After``, with ±20% jitter.

        Raises:
            httpx.HTTPStatusError: Non-2xx response. The message carries the
                service's ``error``/``message`` field, never the raw body.
        """
        response = await self._client.request(method=method, url=path, json=body, params=params)

        if response.status_code == 429 and _retries > 0:
            try:
                retry_after = float(response.headers.get("retry-after", "0"))
            except ValueError:
                retry_after = 0.0
            delay = max(retry_after, min(self._base_delay * (2**_attempt), 60))
            delay *= 0.8 + random.random() * 0.4
            logger.info(
                "Rate limited (429), retrying %s %s in %.1fs (attempt %d/%d)",
                method, path, delay, _attempt + 1, _attempt + _retries,
            )
            await asyncio.sleep(delay)
            return await self.request(method, path, body, params, _retries - 1, _attempt + 1)

        if response.status_code >= 400:
            try:
                err_data = response.json()
                err_msg = err_data.get("error", err_data.get("message", "Request failed"))
            except Exception:
                err_msg = "Request failed"
            raise httpx.HTTPStatusError(
                f"Request to {self.base_url} failed ({response.status_code}): {err_msg}",
                request=response.request,
                response=response,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            return {"text": response.text}

    async def close(self) -> None:
        await self._client.aclose()
