"""Persistence models for the data access layer."""

from __future__ import annotations

import hashlib
from datetime import datetime  # noqa: TC003 - pydantic resolves field annotations at runtime
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator


class ServerStatus(StrEnum):
    UNKNOWN = "UNKNOWN"  # occupancy probe failed, presumed idle
    INIT = "INIT"  # request admitted, provisioning not started
    ALLOCATING = "ALLOCATING"  # provider handler is creating compute
    WAITING = "WAITING"  # waiting for the first heartbeat
    SETTING_UP = "SETTING_UP"  # game-specific post-provisioning setup
    IDLE = "IDLE"  # reachable, below the minimum player count
    RUNNING = "RUNNING"  # reachable and in use
    CLOSING = "CLOSING"  # teardown scheduled
    DEALLOCATING = "DEALLOCATING"  # provider handler is destroying compute
    CLOSED = "CLOSED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ServerStatus.CLOSED, ServerStatus.FAILED})

# Statuses whose close_at deadline is honoured by the expiry sweep.
EXPIRABLE_STATUSES = frozenset(
    {ServerStatus.WAITING, ServerStatus.SETTING_UP, ServerStatus.IDLE, ServerStatus.UNKNOWN},
)

# Once teardown starts, close_at is frozen.
CLOSE_AT_FROZEN_STATUSES = frozenset({ServerStatus.CLOSING, ServerStatus.DEALLOCATING, ServerStatus.CLOSED})


class Server(BaseModel, frozen=True):
    """A requested or running game-server instance."""

    id: str
    client_id: str
    game: str  # catalog slug
    provider_id: str
    region: str
    status: ServerStatus = ServerStatus.INIT
    ip: str | None = None
    port: int | None = None
    image: str | None = None
    # passwords, close_* thresholds, callback_url, map/config, git deploy info,
    # reserved gs_token, SDR discovery results, ...
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    close_at: datetime | None = None

    @property
    def callback_url(self) -> str:
        return self.data.get("callback_url") or ""

    @property
    def close_min_players(self) -> int:
        return int(self.data["close_min_players"])

    @property
    def close_idle_time(self) -> int:
        return int(self.data["close_idle_time"])

    @property
    def close_wait_time(self) -> int:
        return int(self.data["close_wait_time"])

    def with_data(self, **changes: Any) -> Server:  # noqa: ANN401
        """Return a copy with the given keys merged into the data bag."""
        return self.model_copy(update={"data": {**self.data, **changes}})


class ProviderKind(StrEnum):
    KUBERNETES_NODE = "KUBERNETES_NODE"
    DIGITAL_OCEAN = "DIGITAL_OCEAN"
    VULTR = "VULTR"
    LOAD_BALANCER = "LOAD_BALANCER"


class WeightedProvider(BaseModel, frozen=True):
    """A child of a load-balancer provider."""

    id: str
    weight: float = Field(default=1.0, ge=0)


class PortRange(BaseModel, frozen=True):
    min: int = Field(ge=1, le=65535)
    max: int = Field(ge=1, le=65535)

    @model_validator(mode="after")
    def _check_order(self) -> Self:
        if self.max < self.min:
            raise ValueError("Port range max must not be below min")
        return self


class Provider(BaseModel, frozen=True):
    """A provisioning backend."""

    id: str
    kind: ProviderKind
    region: str
    limit: int = Field(default=-1, ge=-1)  # -1 = unlimited
    priority: int = 0
    # credentials, image refs, ports, port_granularity, load_balancer_providers, ...
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_load_balancer(self) -> bool:
        return self.kind == ProviderKind.LOAD_BALANCER

    @property
    def load_balancer_providers(self) -> list[WeightedProvider]:
        return [WeightedProvider.model_validate(item) for item in self.metadata.get("load_balancer_providers", [])]

    @property
    def port_range(self) -> PortRange | None:
        ports = self.metadata.get("ports")
        return PortRange.model_validate(ports) if ports else None

    @property
    def port_granularity(self) -> int:
        return max(int(self.metadata.get("port_granularity", 2)), 1)

    def has_capacity(self, active_count: int) -> bool:
        return self.limit == -1 or active_count < self.limit


class RegionAccess(BaseModel, frozen=True):
    limit: int = Field(ge=0)


class ClientAccess(BaseModel, frozen=True):
    games: list[str] = Field(default_factory=list)
    limit: int = Field(default=0, ge=0)  # concurrent active servers, all regions
    regions: dict[str, RegionAccess] = Field(default_factory=dict)
    providers: list[str] = Field(default_factory=list)  # allow list; empty = any
    close_timer_limit: int = Field(default=3600, ge=0)  # ceiling for close_idle_time
    wait_timer_limit: int = Field(default=600, ge=0)  # ceiling for close_wait_time
    monitor_servers: bool = False  # may list every client's active servers


class ClientDenials(BaseModel, frozen=True):
    providers: list[str] = Field(default_factory=list)


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest used to store and look up client bearer secrets."""
    return hashlib.sha256(secret.encode()).hexdigest()


class Client(BaseModel, frozen=True):
    """An API consumer and its access policy."""

    id: str
    name: str = ""
    secret_hash: str  # SHA-256 hex digest of the bearer secret
    access: ClientAccess = Field(default_factory=ClientAccess)
    no_access: ClientDenials = Field(default_factory=ClientDenials)

    def has_game_access(self, game: str) -> bool:
        return game in self.access.games

    def has_region_access(self, region: str) -> bool:
        return region in self.access.regions

    def has_provider_access(self, provider_id: str) -> bool:
        if provider_id in self.no_access.providers:
            return False
        return not self.access.providers or provider_id in self.access.providers

    def region_limit(self, region: str) -> int:
        access = self.access.regions.get(region)
        return access.limit if access is not None else 0


class QueryType(StrEnum):
    A2S = "a2s"  # Source engine query (TF2, Valheim, ...)
    MINECRAFT = "minecraft"  # Java edition server list ping


class Game(BaseModel, frozen=True):
    """Game catalog entry."""

    slug: str
    name: str = ""
    profile: str = ""  # GameProfile key; defaults to the slug
    query_type: QueryType
    default_args: dict[str, Any] = Field(default_factory=dict)
    provider_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @property
    def profile_key(self) -> str:
        return self.profile or self.slug

    def overrides_for(self, kind: ProviderKind) -> dict[str, Any]:
        return dict(self.provider_overrides.get(kind.value, {}))


class Token(BaseModel, frozen=True):
    """Externally issued game-server login token."""

    login_token: str
    steam_id: str = ""
    in_use: bool = False
