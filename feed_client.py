"""Async client for the iTrak vehicle location feed."""
from __future__ import annotations

from typing import Optional

import httpx


DEFAULT_FEED_TIMEOUT_S = 5.0


class FeedFetchError(RuntimeError):
    """The feed could not be fetched or read."""


class FeedClient:
    """Fetch the raw iTrak feed body with a bounded timeout."""

    def __init__(
        self,
        feed_url: str,
        timeout: float = DEFAULT_FEED_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._feed_url = feed_url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def feed_url(self) -> str:
        return self._feed_url

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self) -> str:
        client = await self._ensure_client()
        try:
            response = await client.get(self._feed_url, timeout=self._timeout)
            body = response.text
        except httpx.HTTPError as exc:
            raise FeedFetchError(f"could not get data feed: {exc!r}") from exc
        # Non-2xx bodies are still returned for splitting.
        if not response.is_success:
            print(f"[feed] feed returned HTTP {response.status_code}")
        return body
