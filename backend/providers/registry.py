"""Provider lookup, load-balancer resolution and handler construction."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from providers.adapters.digitalocean import DigitalOceanHandler
from providers.adapters.kubernetes import KubernetesHandler
from providers.adapters.vultr import VultrHandler
from providers.handler import ProvisioningError
from shared.dal.models import ProviderKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from providers.allocator import PortAllocator, TokenPool
    from providers.cache import ClientCache
    from providers.handler import ProviderHandler
    from providers.settings import ProvisioningSettings
    from shared.dal.models import Client, Game, Provider
    from shared.dal.provider_repository import ProviderRepository
    from shared.dal.server_repository import ServerRepository

logger = structlog.get_logger()

HANDLERS: dict[ProviderKind, type[ProviderHandler]] = {
    ProviderKind.KUBERNETES_NODE: KubernetesHandler,
    ProviderKind.DIGITAL_OCEAN: DigitalOceanHandler,
    ProviderKind.VULTR: VultrHandler,
}


class UnknownProviderError(LookupError):
    """No provider with the requested id, or a load balancer without usable children."""


class ProviderRegistry:
    def __init__(
        self,
        providers: ProviderRepository,
        servers: ServerRepository,
        *,
        cache: ClientCache,
        ports: PortAllocator,
        tokens: TokenPool,
        settings: ProvisioningSettings,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._providers = providers
        self._servers = servers
        self._cache = cache
        self._ports = ports
        self._tokens = tokens
        self._settings = settings
        self._sleep = sleep

    async def get(self, provider_id: str) -> Provider | None:
        return await self._providers.get(provider_id)

    async def get_by_region(self, region: str) -> list[Provider]:
        """Providers in ``region``, highest priority first."""
        return await self._providers.list_by_region(region)

    async def active_count(self, provider_id: str) -> int:
        return await self._servers.count_active(provider_id=provider_id)

    async def available(self, client: Client, region: str) -> list[str]:
        """Ids of providers in ``region`` the client may use that still have capacity.

        Informational only; admission re-checks capacity when a server is requested.
        """
        available = []
        for provider in await self.get_by_region(region):
            if not client.has_provider_access(provider.id):
                continue
            if provider.has_capacity(await self.active_count(provider.id)):
                available.append(provider.id)
        return available

    async def resolve(self, provider: Provider) -> Provider:
        """Pick the concrete provider behind ``provider``.

        For a load balancer this is the child with the lowest
        ``active servers * weight``; the first listed child wins a tie.
        Children that no longer exist are skipped.
        """
        if not provider.is_load_balancer:
            return provider

        best: Provider | None = None
        best_score = 0.0
        for child in provider.load_balancer_providers:
            candidate = await self.get(child.id)
            if candidate is None:
                logger.warning("load balancer child missing", provider_id=provider.id, child_id=child.id)
                continue
            if candidate.is_load_balancer:
                logger.warning("nested load balancer ignored", provider_id=provider.id, child_id=child.id)
                continue
            score = await self.active_count(candidate.id) * child.weight
            if best is None or score < best_score:
                best, best_score = candidate, score

        if best is None:
            raise UnknownProviderError(f"Load balancer {provider.id} has no usable providers")
        logger.debug("load balancer resolved", provider_id=provider.id, child_id=best.id, score=best_score)
        return best

    def handler_for(self, provider: Provider, game: Game) -> ProviderHandler:
        handler_class = HANDLERS.get(provider.kind)
        if handler_class is None:
            raise ProvisioningError(f"Provider kind {provider.kind} cannot provision servers")
        extra = {"sleep": self._sleep} if self._sleep is not None else {}
        return handler_class(
            provider,
            game,
            servers=self._servers,
            cache=self._cache,
            ports=self._ports,
            tokens=self._tokens,
            settings=self._settings,
            **extra,
        )

    async def aclose(self) -> None:
        await self._cache.aclose()
