"""Per-provider HTTP client cache."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

logger = structlog.get_logger()


class ClientCache:
    """Lazily creates one ``httpx.AsyncClient`` per provider id and reuses it.

    Owned by the ProviderRegistry and handed to every handler it builds;
    ``aclose()`` runs at application shutdown.
    """

    def __init__(self, *, timeout: float = 30.0) -> None:
        self._timeout = timeout
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._lock = asyncio.Lock()

    async def get(self, provider_id: str, factory: Callable[[], httpx.AsyncClient] | None = None) -> httpx.AsyncClient:
        client = self._clients.get(provider_id)
        if client is not None:
            return client
        async with self._lock:
            client = self._clients.get(provider_id)
            if client is None:
                client = factory() if factory is not None else httpx.AsyncClient(timeout=self._timeout)
                self._clients[provider_id] = client
                logger.debug("provider client created", provider_id=provider_id)
            return client

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for provider_id, client in clients.items():
            try:
                await client.aclose()
            except httpx.HTTPError:
                logger.warning("failed to close provider client", provider_id=provider_id)
