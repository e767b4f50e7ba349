"""Scarce resource allocation: host ports per provider and login tokens."""

from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from typing import TYPE_CHECKING, Protocol

import structlog

from providers.handler import ProvisioningError

if TYPE_CHECKING:
    from shared.dal.models import PortRange, Provider, Server, Token
    from shared.dal.server_repository import ServerRepository
    from shared.dal.token_repository import TokenRepository

logger = structlog.get_logger()


class PortExhaustedError(ProvisioningError):
    """Every candidate port in the provider's range is held by an active server."""


class TokenUnavailableError(ProvisioningError):
    """No usable login token could be reserved."""


def aligned_ports(port_range: PortRange, granularity: int) -> range:
    """All candidate ports: multiples of ``granularity`` inside the range."""
    first = -(-port_range.min // granularity) * granularity
    return range(first, port_range.max + 1, granularity)


class PortAllocator:
    """Picks a free host port on a provider and persists it before provisioning.

    Allocation for a provider is serialized by a per-provider lock held
    across read, pick and write, so two servers being provisioned
    concurrently on the same provider never receive the same port.
    """

    def __init__(
        self,
        servers: ServerRepository,
        *,
        max_attempts: int = 64,
        rng: random.Random | None = None,
    ) -> None:
        self._servers = servers
        self._max_attempts = max_attempts
        self._rng = rng or random.Random()  # noqa: S311 - not security sensitive
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _sample(self, candidates: range) -> int:
        return candidates[self._rng.randrange(len(candidates))]

    def pick(self, provider: Provider, used: set[int]) -> int:
        port_range = provider.port_range
        if port_range is None:
            raise ProvisioningError(f"Provider {provider.id} has no port range configured")
        candidates = aligned_ports(port_range, provider.port_granularity)
        if not candidates:
            raise PortExhaustedError(
                f"Provider {provider.id} has no port aligned to {provider.port_granularity} "
                f"in {port_range.min}-{port_range.max}",
            )

        for _ in range(self._max_attempts):
            candidate = self._sample(candidates)
            if candidate not in used:
                return candidate

        free = [port for port in candidates if port not in used]
        if not free:
            raise PortExhaustedError(
                f"No free port on provider {provider.id} in {port_range.min}-{port_range.max}",
            )
        return self._rng.choice(free)

    async def allocate(self, provider: Provider, server: Server) -> Server:
        """Reserve a port for ``server`` and return the persisted copy."""
        async with self._locks[provider.id]:
            used = await self._servers.ports_in_use(provider.id)
            port = self.pick(provider, used)
            reserved = server.model_copy(update={"port": port})
            if not await self._servers.save(reserved):
                raise ProvisioningError(f"Server {server.id} changed status during port allocation")
        logger.info("port allocated", server_id=server.id, provider_id=provider.id, port=port)
        return reserved


class TokenIssuer(Protocol):
    """External authority that mints and validates login tokens."""

    async def create(self) -> Token: ...

    async def is_valid(self, token: Token) -> bool: ...


class TokenPool:
    """Reserve and release login tokens from the shared pool.

    Reservation is scan-based: a token is a candidate when it is not flagged
    in use and no active server references it. The in-use flag flip is
    conditional, so a concurrent reservation of the same token makes one
    caller rescan instead of sharing it.
    """

    def __init__(
        self,
        tokens: TokenRepository,
        servers: ServerRepository,
        issuer: TokenIssuer | None = None,
        *,
        max_attempts: int = 5,
    ) -> None:
        self._tokens = tokens
        self._servers = servers
        self._issuer = issuer
        self._max_attempts = max_attempts

    async def reserve(self) -> Token:
        for _ in range(self._max_attempts):
            referenced = await self._servers.tokens_in_use()
            token = await self._tokens.find_free(exclude=referenced)

            if token is None:
                if self._issuer is None:
                    raise TokenUnavailableError("Token pool is empty and no issuer is configured")
                logger.warning("no free tokens, requesting a new one")
                token = await self._issuer.create()
                await self._tokens.add(token)

            if self._issuer is not None and not await self._issuer.is_valid(token):
                logger.error("token rejected by issuer, removing", steam_id=token.steam_id)
                await self._tokens.delete(token.login_token)
                continue

            if await self._tokens.set_in_use(token.login_token, in_use=True):
                logger.info("token reserved", steam_id=token.steam_id)
                return token.model_copy(update={"in_use": True})

        raise TokenUnavailableError(f"Could not reserve a token after {self._max_attempts} attempts")

    async def release(self, login_token: str) -> None:
        """Mark a token free again. Unknown or already free tokens are ignored."""
        if await self._tokens.set_in_use(login_token, in_use=False):
            logger.info("token released")
        else:
            logger.debug("token release had no effect")
