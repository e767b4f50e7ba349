"""Periodic health, occupancy and deadline sweep over active servers."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from games.profiles import UnknownProfileError
from games.query import QueryError, probe
from games.rcon import RconError
from manager.servers.lifecycle import arm_deadline, utcnow
from shared.dal.models import EXPIRABLE_STATUSES, ServerStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from games.catalog import GameCatalog
    from games.profiles import GameProfile
    from games.query import ProbeResult
    from games.setup import InitialSetup
    from manager.servers.jobs import JobRunner
    from manager.servers.lifecycle import ServerLifecycleController
    from shared.dal.models import Game, Server
    from shared.dal.server_repository import ServerRepository

    ProbeFunc = Callable[..., Awaitable[ProbeResult]]

logger = structlog.get_logger()

OCCUPANCY_STATUSES = frozenset({ServerStatus.UNKNOWN, ServerStatus.IDLE, ServerStatus.RUNNING})


class HealthMonitor:
    """Drives WAITING servers to IDLE, tracks occupancy and reclaims expired servers.

    Every ``interval`` seconds ``tick()`` runs three independent sweeps and
    hands each server to the JobRunner as its own job:

    - heartbeat: WAITING servers answering a query go through initial setup
    - occupancy: UNKNOWN/IDLE/RUNNING servers move by their player count
    - expiry: servers past their close_at deadline are closed
    """

    def __init__(
        self,
        servers: ServerRepository,
        *,
        lifecycle: ServerLifecycleController,
        catalog: GameCatalog,
        setup: InitialSetup,
        jobs: JobRunner,
        interval: float = 30.0,
        probe_timeout: float = 5.0,
        probe_func: ProbeFunc = probe,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._servers = servers
        self._lifecycle = lifecycle
        self._catalog = catalog
        self._setup = setup
        self._jobs = jobs
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._probe = probe_func
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start the periodic sweep task."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("health monitor started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the sweep task. Jobs already submitted keep running."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:  # pragma: no cover - long-running background loop
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("health monitor tick failed")

    async def tick(self) -> None:
        now = self._clock()

        for server in await self._servers.list_by_status({ServerStatus.WAITING}):
            self._jobs.submit(self.check_heartbeat(server), name=f"heartbeat-{server.id}")

        for server in await self._servers.list_by_status(EXPIRABLE_STATUSES):
            if server.close_at is not None and now > server.close_at:
                self._jobs.submit(self.expire(server), name=f"expire-{server.id}")

        active = await self._servers.list_by_status(OCCUPANCY_STATUSES)
        logger.debug("checking occupancy", servers=len(active))
        for server in active:
            self._jobs.submit(self.check_occupancy(server), name=f"occupancy-{server.id}")

    async def check_heartbeat(self, server: Server) -> None:
        resolved = await self._game_for(server)
        if resolved is None:
            return
        game, profile = resolved
        now = self._clock()

        try:
            await self._query(server, game, profile)
        except QueryError as e:
            logger.debug("heartbeat probe failed", server_id=server.id, ip=server.ip, port=server.port, error=str(e))
            await self._lifecycle.transition(
                server,
                server.status,
                close_at=arm_deadline(server, server.close_idle_time, now),
            )
            return

        logger.info("received first heartbeat", server_id=server.id)
        setting_up = await self._lifecycle.transition(
            server,
            ServerStatus.SETTING_UP,
            close_at=arm_deadline(server, server.close_idle_time, now),
        )
        if setting_up is None:
            return

        try:
            discovered = await self._setup.discover_endpoint(setting_up, profile)
            if discovered.data != setting_up.data:
                setting_up = await self._lifecycle.transition(setting_up, ServerStatus.SETTING_UP, data=discovered.data)
                if setting_up is None:
                    return
            await self._setup.configure(setting_up, profile)
        except RconError:
            # close_at stays armed so the expiry sweep reclaims the server
            logger.exception("initial setup failed", server_id=server.id)
            return

        await self._lifecycle.transition(setting_up, ServerStatus.IDLE, close_at=None)

    async def check_occupancy(self, server: Server) -> None:
        resolved = await self._game_for(server)
        if resolved is None:
            return
        game, profile = resolved
        now = self._clock()

        try:
            result = await self._query(server, game, profile)
        except QueryError as e:
            logger.debug("occupancy probe failed", server_id=server.id, error=str(e))
            await self._lifecycle.transition(
                server,
                ServerStatus.UNKNOWN,
                close_at=arm_deadline(server, server.close_idle_time, now),
            )
            return

        logger.debug(
            "pinged server",
            server_id=server.id,
            players=result.player_count,
            status=server.status,
        )
        if result.player_count < server.close_min_players:
            await self._lifecycle.transition(
                server,
                ServerStatus.IDLE,
                close_at=arm_deadline(server, server.close_idle_time, now),
            )
        else:
            await self._lifecycle.transition(server, ServerStatus.RUNNING, close_at=None)

    async def expire(self, server: Server) -> None:
        closing = await self._lifecycle.schedule_close(server)
        if closing is not None:
            logger.info("server expired", server_id=server.id, close_at=server.close_at)

    async def _game_for(self, server: Server) -> tuple[Game, GameProfile] | None:
        game = await self._catalog.get(server.game)
        if game is None:
            logger.error("server game missing from catalog", server_id=server.id, game=server.game)
            return None
        try:
            profile = self._catalog.profile_for(game)
        except UnknownProfileError:
            logger.exception("server game has no launch profile", server_id=server.id, game=server.game)
            return None
        return game, profile

    async def _query(self, server: Server, game: Game, profile: GameProfile) -> ProbeResult:
        port = profile.query_port(server.port) if server.port else None
        return await self._probe(server.ip, port, game.query_type, timeout=self._probe_timeout)
