"""Provider handler contract and the steps every handler shares."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from games.profiles import get_profile
from games.templates import render_startup_script

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from games.profiles import GameProfile
    from providers.allocator import PortAllocator, TokenPool
    from providers.cache import ClientCache
    from providers.settings import ProvisioningSettings
    from shared.dal.models import Game, Provider, Server
    from shared.dal.server_repository import ServerRepository

logger = structlog.get_logger()


class ProvisioningError(Exception):
    """Creating or destroying compute for a server failed."""


def required_metadata(metadata: dict[str, Any], key: str) -> Any:  # noqa: ANN401
    try:
        return metadata[key]
    except KeyError:
        raise ProvisioningError(f"Provider metadata is missing {key!r}") from None


@dataclass(frozen=True)
class InstanceOptions:
    """Everything a handler needs to start one game container."""

    server_id: str
    name: str
    app: str
    image: str
    port: int
    args: str
    exposed_ports: list[int]
    metadata: dict[str, Any] = field(default_factory=dict)
    git_repository: str = ""
    git_deploy_key: str = ""
    startup_template: str = "docker_run"

    def startup_script(self) -> str:
        return render_startup_script(
            self.startup_template,
            id=self.server_id,
            image=self.image,
            args=self.args,
            ports=self.exposed_ports,
            git_repository=self.git_repository,
            git_deploy_key=self.git_deploy_key,
        )


def build_instance_options(
    server: Server,
    provider: Provider,
    game: Game,
    profile: GameProfile,
    *,
    ip: str | None = None,
) -> InstanceOptions:
    """Merge catalog defaults, request data and provider settings into launch options.

    Precedence, lowest first: game default args, server request data, the
    allocated port and address. Provider metadata is overlaid by the game's
    override for the provider kind (image, template, sizes).
    """
    metadata = {**provider.metadata, **game.overrides_for(provider.kind)}
    port = server.port or profile.default_port
    launch = {**game.default_args, **server.data, "port": port}
    if ip:
        launch["ip"] = ip
    return InstanceOptions(
        server_id=server.id,
        name=f"{game.slug}-{server.id}",
        app=game.slug,
        image=metadata.get("image") or server.image or "",
        port=port,
        args=profile.build_args(launch),
        exposed_ports=profile.exposed_ports(port),
        metadata=metadata,
        git_repository=server.data.get("git_repository") or "",
        git_deploy_key=server.data.get("git_deploy_key") or "",
        startup_template=metadata.get("startup_template") or profile.startup_template,
    )


class ProviderHandler(ABC):
    """Creates and destroys the compute behind one server on one provider.

    ``create_instance`` reserves the login token the game needs, delegates
    to ``provision`` and persists the result. Any failure triggers a best
    effort ``destroy_instance`` before it is re-raised as ProvisioningError.
    ``destroy_instance`` must tolerate an instance that no longer exists.
    """

    def __init__(
        self,
        provider: Provider,
        game: Game,
        *,
        servers: ServerRepository,
        cache: ClientCache,
        ports: PortAllocator,
        tokens: TokenPool,
        settings: ProvisioningSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.game = game
        self.profile = get_profile(game.profile_key)
        self._servers = servers
        self._cache = cache
        self._ports = ports
        self._tokens = tokens
        self._settings = settings
        self._sleep = sleep

    async def create_instance(self, server: Server) -> Server:
        log = logger.bind(server_id=server.id, provider_id=self.provider.id, kind=self.provider.kind)
        try:
            if self.profile.needs_login_token and not server.data.get("gs_token"):
                token = await self._tokens.reserve()
                server = server.with_data(gs_token=token.login_token)
                await self._persist(server)
            server = await self.provision(server)
            await self._persist(server)
        except Exception as e:
            log.exception("provisioning failed, cleaning up")
            await self._cleanup(server)
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(f"{self.provider.kind} provisioning failed: {e!r}") from e
        log.info("instance created", ip=server.ip, port=server.port)
        return server

    @abstractmethod
    async def provision(self, server: Server) -> Server:
        """Create the compute, wait for its address and return the server with ip/port set."""

    @abstractmethod
    async def destroy_instance(self, server: Server) -> None: ...

    def instance_options(self, server: Server, *, ip: str | None = None) -> InstanceOptions:
        return build_instance_options(server, self.provider, self.game, self.profile, ip=ip)

    async def http_client(self) -> httpx.AsyncClient:
        return await self._cache.get(self.provider.id, self.build_http_client)

    def build_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)

    async def poll_for_address(self, fetch: Callable[[], Awaitable[str | None]], *, resource: str) -> str:
        """Call ``fetch`` until it returns an address, within the configured attempt budget."""
        for attempt in range(1, self._settings.poll_attempts + 1):
            address = await fetch()
            if address:
                return address
            logger.debug("waiting for address", resource=resource, attempt=attempt)
            await self._sleep(self._settings.poll_interval_seconds)
        raise ProvisioningError(
            f"{resource} had no address after {self._settings.poll_attempts} attempts",
        )

    async def _persist(self, server: Server) -> None:
        if not await self._servers.save(server):
            raise ProvisioningError(f"Server {server.id} changed status while provisioning")

    async def _cleanup(self, server: Server) -> None:
        try:
            await self.destroy_instance(server)
        except Exception:
            logger.exception("cleanup after failed provisioning also failed", server_id=server.id)
