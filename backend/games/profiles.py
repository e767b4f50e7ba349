"""Per-game launch rules.

A GameProfile knows how to turn the merged launch options of a server
(catalog defaults, request data, allocated port) into the command line the
game container runs, which startup template wraps it on VM providers, and
which ports have to be reachable from outside.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping


class UnknownProfileError(LookupError):
    """Raised when a catalog entry names a profile that does not exist."""


def _quoted(value: object) -> str:
    return shlex.quote(str(value))


class GameProfile(ABC):
    key: str
    default_port: int
    # Offset from the game port to the port answering status queries.
    query_port_offset: int = 0
    startup_template: str = "docker_run"
    needs_login_token: bool = False
    supports_rcon_setup: bool = False
    default_map: str | None = None

    @abstractmethod
    def build_args(self, options: Mapping[str, Any]) -> str:
        """Return the container command line for the given launch options."""

    def query_port(self, port: int) -> int:
        return port + self.query_port_offset

    def tv_port(self, port: int) -> int | None:
        """Spectator port paired with ``port``, if the game has one."""
        return None

    def exposed_ports(self, port: int) -> list[int]:
        """Ports the startup script opens in the host firewall."""
        ports = [port, self.query_port(port)]
        tv_port = self.tv_port(port)
        if tv_port is not None:
            ports.append(tv_port)
        return sorted(set(ports))


class Tf2Profile(GameProfile):
    key = "tf2"
    default_port = 27015
    startup_template = "docker_run_public_ip"
    needs_login_token = True
    supports_rcon_setup = True
    default_map = "cp_badlands"

    def tv_port(self, port: int) -> int | None:
        return port + 1

    def build_args(self, options: Mapping[str, Any]) -> str:
        port = int(options.get("port") or self.default_port)
        args = [
            "./srcds_run",
            "+servercfgfile server",
            "-condebug",
            f"+hostname {_quoted(options.get('servername') or 'Team Fortress')}",
            f"+sv_password {_quoted(options.get('password') or '')}",
            f"+rcon_password {_quoted(options.get('rcon_password') or '')}",
            f"+map {_quoted(options.get('map') or self.default_map)}",
            f"+port {port}",
        ]
        if options.get("ip"):
            args.append(f"+ip {options['ip']}")
        if options.get("gs_token"):
            args.append(f"+sv_setsteamaccount {options['gs_token']}")
        if options.get("tv_enable"):
            tv_name = _quoted(options.get("tv_name") or "SourceTV")
            args += [
                "+tv_enable 1",
                f"+tv_name {tv_name}",
                f"+tv_title {tv_name}",
                f"+tv_port {options.get('tv_port') or self.tv_port(port)}",
            ]
        if options.get("sdr_enable"):
            args.append("-enablefakeip")
        return " ".join(args)


class ValheimProfile(GameProfile):
    key = "valheim"
    default_port = 2456
    query_port_offset = 1  # Steam query socket listens next to the game port

    def build_args(self, options: Mapping[str, Any]) -> str:
        args = [
            f"-name {_quoted(options.get('servername') or 'Valheim')}",
            f"-world {_quoted(options.get('world') or 'Dedicated')}",
            f"-port {int(options.get('port') or self.default_port)}",
            "-public 1",
        ]
        if options.get("password"):
            args.append(f"-password {_quoted(options['password'])}")
        return " ".join(args)


class MinecraftProfile(GameProfile):
    key = "minecraft"
    default_port = 25565
    startup_template = "start_script"

    def build_args(self, options: Mapping[str, Any]) -> str:
        port = int(options.get("port") or self.default_port)
        rcon_port = int(options.get("rcon_port") or port + 10)
        return f"--port {port} --rcon-port {rcon_port}"


PROFILES: dict[str, GameProfile] = {
    profile.key: profile for profile in (Tf2Profile(), ValheimProfile(), MinecraftProfile())
}


def get_profile(key: str) -> GameProfile:
    try:
        return PROFILES[key]
    except KeyError:
        raise UnknownProfileError(f"Unknown game profile: {key!r}") from None
