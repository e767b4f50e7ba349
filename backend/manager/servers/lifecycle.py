"""Server lifecycle: admission, provisioning, teardown and status writes."""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime, timedelta
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import structlog

from games.profiles import UnknownProfileError
from manager.servers.errors import AdmissionError, ServerNotFoundError, ServerStateError
from manager.servers.transitions import check_transition
from manager.servers.types import ServerDefaults
from providers.handler import ProvisioningError
from providers.registry import UnknownProviderError
from shared.dal.models import CLOSE_AT_FROZEN_STATUSES, Server, ServerStatus
from shared.validators import validate_callback_url

if TYPE_CHECKING:
    from collections.abc import Callable

    from games.catalog import GameCatalog
    from manager.servers.jobs import JobRunner
    from manager.servers.notifications import NotificationDispatcher
    from manager.servers.types import CreateServerRequest
    from providers.allocator import TokenPool
    from providers.handler import ProviderHandler
    from providers.registry import ProviderRegistry
    from shared.dal.models import Client
    from shared.dal.server_repository import ServerRepository

logger = structlog.get_logger()

_THRESHOLDS = ("close_min_players", "close_idle_time", "close_wait_time")


def utcnow() -> datetime:
    return datetime.now(UTC)


def arm_deadline(server: Server, seconds: int, now: datetime) -> datetime:
    """close_at for a deadline ``seconds`` from now; an already armed deadline is kept."""
    return server.close_at or now + timedelta(seconds=seconds)


def _threshold(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise AdmissionError(f"{key} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise AdmissionError(f"{key} must be an integer") from None
    if number < 0:
        raise AdmissionError(f"{key} must not be negative")
    return number


class ServerLifecycleController:
    """Owns every status write of a server after it is admitted.

    Status writes are compare-and-set on the stored status: when another
    writer got there first the step is dropped and ``transition`` returns
    None. Provisioning and teardown run as JobRunner jobs.
    """

    def __init__(
        self,
        servers: ServerRepository,
        *,
        catalog: GameCatalog,
        registry: ProviderRegistry,
        tokens: TokenPool,
        jobs: JobRunner,
        notifications: NotificationDispatcher,
        defaults: ServerDefaults | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._servers = servers
        self._catalog = catalog
        self._registry = registry
        self._tokens = tokens
        self._jobs = jobs
        self._notifications = notifications
        self._defaults = defaults or ServerDefaults()
        self._clock = clock

    # Admission

    async def create_request(self, client: Client, request: CreateServerRequest) -> Server:
        """Admit a new server request and schedule its provisioning.

        Raises AdmissionError without persisting anything when the request
        is refused. The returned record is still INIT.
        """
        log = logger.bind(client_id=client.id, game=request.game, region=request.region)
        log.info("received server request", provider_id=request.provider)

        game = await self._catalog.get(request.game)
        if game is None:
            raise AdmissionError(f"No game found with slug {request.game}")
        try:
            profile = self._catalog.profile_for(game)
        except UnknownProfileError as e:
            raise AdmissionError(str(e)) from None

        data = dict(request.data)
        thresholds = {key: _threshold(data, key, getattr(self._defaults, key)) for key in _THRESHOLDS}
        if thresholds["close_wait_time"] > client.access.wait_timer_limit:
            raise AdmissionError("Requested wait time limit is too high", HTTPStatus.FORBIDDEN)
        if thresholds["close_idle_time"] > client.access.close_timer_limit:
            raise AdmissionError("Requested close time limit is too high", HTTPStatus.FORBIDDEN)
        if thresholds["close_min_players"] < 1:
            raise AdmissionError("Requested minimum player count is too low", HTTPStatus.FORBIDDEN)

        if not client.has_game_access(game.slug):
            raise AdmissionError(f"Client does not have access to '{game.slug}' game", HTTPStatus.FORBIDDEN)
        if not client.has_region_access(request.region):
            raise AdmissionError(f"Client does not have access to '{request.region}' region", HTTPStatus.FORBIDDEN)

        if await self._servers.count_active(client_id=client.id) >= client.access.limit:
            raise AdmissionError("Client has reached its server limit", HTTPStatus.FORBIDDEN)
        region_active = await self._servers.count_active(client_id=client.id, region=request.region)
        if region_active >= client.region_limit(request.region):
            raise AdmissionError(
                f"Client has reached its server limit in '{request.region}' region",
                HTTPStatus.TOO_MANY_REQUESTS,
            )

        provider = await self._registry.get(request.provider)
        if provider is None:
            raise AdmissionError("Invalid provider")
        if not client.has_provider_access(provider.id):
            raise AdmissionError("Client does not have access to the provider", HTTPStatus.FORBIDDEN)
        try:
            provider = await self._registry.resolve(provider)
        except UnknownProviderError as e:
            raise AdmissionError(str(e)) from None
        if not provider.has_capacity(await self._registry.active_count(provider.id)):
            raise AdmissionError(
                "Selected provider cannot handle this request currently",
                HTTPStatus.TOO_MANY_REQUESTS,
            )
        if not client.has_provider_access(provider.id):
            raise AdmissionError("Client does not have access to the provider", HTTPStatus.FORBIDDEN)

        data.update(thresholds)
        try:
            data["callback_url"] = validate_callback_url(str(data.get("callback_url") or ""))
        except ValueError as e:
            raise AdmissionError(str(e)) from None
        data["git_repository"] = data.get("git_repository") or ""
        data["git_deploy_key"] = data.get("git_deploy_key") or ""
        data["password"] = data.get("password") or ""
        if profile.supports_rcon_setup and not data.get("rcon_password"):
            data["rcon_password"] = secrets.token_urlsafe(12)

        server = Server(
            id=uuid.uuid4().hex,
            client_id=client.id,
            game=game.slug,
            provider_id=provider.id,
            region=request.region,
            data=data,
            created_at=self._clock(),
        )
        await self._servers.create(server)
        log.info("server request admitted", server_id=server.id, provider_id=provider.id)

        self._schedule(server, "create")
        return server

    async def close_request(self, client: Client, server_id: str) -> Server:
        server = await self.get_for_client(client, server_id)
        if server.status == ServerStatus.CLOSED:
            raise ServerStateError("Server has been already closed")
        if server.status in {ServerStatus.CLOSING, ServerStatus.DEALLOCATING}:
            raise ServerStateError("Server is closing")
        if server.status == ServerStatus.FAILED:
            raise ServerStateError("Server has failed")
        if server.status in {ServerStatus.INIT, ServerStatus.ALLOCATING}:
            raise ServerStateError("Server is still being allocated")

        closing = await self.schedule_close(server)
        if closing is None:
            raise ServerStateError("Server status changed, try again")
        logger.info("close requested", server_id=server.id, client_id=client.id)
        return closing

    async def schedule_close(self, server: Server) -> Server | None:
        """Move to CLOSING and schedule teardown; only the winning writer schedules."""
        closing = await self.transition(
            server,
            ServerStatus.CLOSING,
            close_at=server.close_at or self._clock(),
        )
        if closing is not None:
            self._schedule(closing, "destroy")
        return closing

    # Queries

    async def get_for_client(self, client: Client, server_id: str) -> Server:
        server = await self._servers.get(server_id)
        if server is None or server.client_id != client.id:
            raise ServerNotFoundError(server_id)
        return server

    async def list_active(self, client: Client) -> list[Server]:
        client_id = None if client.access.monitor_servers else client.id
        return await self._servers.list_for_client(client_id, active_only=True, limit=None)

    async def list_all(self, client: Client) -> list[Server]:
        client_id = None if client.access.monitor_servers else client.id
        return await self._servers.list_for_client(client_id, active_only=False, limit=50)

    # Processing

    def _schedule(self, server: Server, action: str) -> None:
        self._jobs.submit(self.process_request(server), name=f"server-{server.id}-{action}")

    async def process_request(self, server: Server) -> None:
        if server.status == ServerStatus.INIT:
            await self.initialize_server(server)
        elif server.status == ServerStatus.CLOSING:
            await self.close_server(server)
        else:
            logger.error("server is in wrong state to be processed", server_id=server.id, status=server.status)
            await self.transition(server, ServerStatus.FAILED, force=True)

    async def initialize_server(self, server: Server) -> None:
        allocating = await self.transition(server, ServerStatus.ALLOCATING)
        if allocating is None:
            return

        try:
            handler = await self._handler_for(allocating)
            created = await handler.create_instance(allocating)
        except Exception:
            logger.exception(
                "failed to initialize server",
                server_id=server.id,
                provider_id=server.provider_id,
                game=server.game,
            )
            await self._fail_allocation(allocating)
            return

        waiting = await self.transition(
            created,
            ServerStatus.WAITING,
            close_at=arm_deadline(created, created.close_wait_time, self._clock()),
        )
        if waiting is not None:
            logger.info("server created", server_id=server.id, ip=waiting.ip, port=waiting.port)

    async def close_server(self, server: Server) -> None:
        """Tear down the compute behind a CLOSING server.

        Errors propagate and leave the server DEALLOCATING.
        """
        logger.info("closing server", server_id=server.id)
        deallocating = await self.transition(server, ServerStatus.DEALLOCATING)
        if deallocating is None:
            return

        handler = await self._handler_for(deallocating)
        await handler.destroy_instance(deallocating)

        closed = await self.transition(deallocating, ServerStatus.CLOSED)
        if closed is None:
            return
        await self._release_token(closed)
        logger.info("server closed", server_id=server.id)

    async def _handler_for(self, server: Server) -> ProviderHandler:
        game = await self._catalog.get(server.game)
        if game is None:
            raise ProvisioningError(f"Game {server.game} is no longer in the catalog")
        provider = await self._registry.get(server.provider_id)
        if provider is None:
            raise ProvisioningError(f"Provider {server.provider_id} no longer exists")
        return self._registry.handler_for(provider, game)

    async def _fail_allocation(self, server: Server) -> None:
        # The handler may have persisted a reserved token before failing.
        stored = await self._servers.get(server.id) or server
        failed = await self.transition(stored, ServerStatus.FAILED)
        if failed is not None:
            await self._release_token(failed)

    async def _release_token(self, server: Server) -> None:
        login_token = server.data.get("gs_token")
        if login_token:
            await self._tokens.release(login_token)

    # Status writes

    async def transition(
        self,
        server: Server,
        target: ServerStatus,
        *,
        force: bool = False,
        **changes: Any,  # noqa: ANN401
    ) -> Server | None:
        """Write ``target`` (plus ``changes``) if the stored status still matches ``server.status``.

        A transition to the current status only writes ``changes`` and sends
        no notification. ``force`` skips the graph check and is reserved for
        marking a server FAILED from an unexpected state.
        """
        if server.status in CLOSE_AT_FROZEN_STATUSES:
            changes.pop("close_at", None)

        if target == server.status:
            updated = server.model_copy(update=changes)
            if updated == server:
                return server
            if not await self._servers.save(updated):
                logger.info("server update lost race", server_id=server.id, status=server.status)
                return None
            return updated

        if not force:
            check_transition(server.status, target)
        updated = server.model_copy(update={**changes, "status": target})
        if not await self._servers.compare_and_set(updated, server.status):
            return None
        logger.info("server status changed", server_id=server.id, previous=server.status, status=target)
        self._notifications.notify(updated)
        return updated
