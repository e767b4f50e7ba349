"""Game-specific setup run once a new server answers its first heartbeat."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

import structlog

from games.rcon import RconClient

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from games.profiles import GameProfile
    from shared.dal.models import Server

logger = structlog.get_logger()

# e.g. "udp/ip  : 169.254.44.12:40213  (public ip: 203.0.113.7)"
_STATUS_ADDRESS_RE = re.compile(r"^udp/ip\s*:\s*(?P<ip>[^\s:]+):(?P<port>\d+)", re.MULTILINE)
_UNASSIGNED_IP = "?.?.?.?"


def parse_status_address(status: str) -> tuple[str, int] | None:
    """Extract the advertised address from RCON ``status`` output.

    Returns None while Steam Datagram Relay has not assigned one yet.
    """
    match = _STATUS_ADDRESS_RE.search(status)
    if match is None or match["ip"] == _UNASSIGNED_IP:
        return None
    return match["ip"], int(match["port"])


class InitialSetup:
    """SDR discovery, then the requested map change and config exec, over RCON.

    The caller persists the discovered endpoint before configuring. Errors (``RconError``) propagate; the server
    then stays in SETTING_UP until its deadline reclaims it.
    """

    def __init__(
        self,
        *,
        sdr_attempts: int = 3,
        sdr_retry_delay: float = 5.0,
        map_change_wait: float = 30.0,
        rcon_timeout: float = 5.0,
        rcon_factory: Callable[[str, int, str], RconClient] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sdr_attempts = sdr_attempts
        self._sdr_retry_delay = sdr_retry_delay
        self._map_change_wait = map_change_wait
        self._rcon_factory = rcon_factory or (
            lambda host, port, password: RconClient(host, port, password, timeout=rcon_timeout)
        )
        self._sleep = sleep

    async def discover_endpoint(self, server: Server, profile: GameProfile) -> Server:
        """Return the server with any discovered SDR endpoint merged into its data."""
        if not profile.supports_rcon_setup or not server.data.get("sdr_enable"):
            return server
        return await self._discover_sdr(server)

    async def configure(self, server: Server, profile: GameProfile) -> None:
        if not profile.supports_rcon_setup:
            return

        log = logger.bind(server_id=server.id, game=server.game)

        target_map = server.data.get("map")
        if target_map and target_map != profile.default_map:
            log.info("changing map", map=target_map)
            await self._command(server, f"changelevel {target_map}")
            await self._sleep(self._map_change_wait)

        config = server.data.get("config")
        if config:
            log.info("executing config", config=config)
            await self._command(server, f"exec {config}")

    async def _discover_sdr(self, server: Server) -> Server:
        for attempt in range(1, self._sdr_attempts + 1):
            status = await self._command(server, "status")
            address = parse_status_address(status)
            logger.debug("sdr status", server_id=server.id, attempt=attempt, found=address is not None)
            if address is not None:
                ip, port = address
                logger.info("sdr endpoint discovered", server_id=server.id, sdr_ip=ip, sdr_port=port)
                return server.with_data(sdr_ip=ip, sdr_port=port, sdr_tv_port=port + 1)
            if attempt < self._sdr_attempts:
                await self._sleep(self._sdr_retry_delay)
        logger.warning("sdr endpoint not assigned", server_id=server.id, attempts=self._sdr_attempts)
        return server

    async def _command(self, server: Server, command: str) -> str:
        client = self._rcon_factory(server.ip or "", server.port or 0, server.data.get("rcon_password") or "")
        async with client:
            return await client.send(command)
