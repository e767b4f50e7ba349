"""Shared fixtures for manager tests: a seeded database and a lifecycle wired to a fake provider handler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import httpx
import pytest

from games.catalog import GameCatalog
from manager.servers.jobs import JobRunner
from manager.servers.lifecycle import ServerLifecycleController
from manager.servers.notifications import NotificationDispatcher
from manager.servers.types import ServerDefaults
from providers.allocator import PortAllocator, TokenPool
from providers.cache import ClientCache
from providers.handler import ProvisioningError
from providers.registry import ProviderRegistry
from providers.settings import ProvisioningSettings
from shared.dal.models import (
    Client,
    ClientAccess,
    Game,
    Provider,
    ProviderKind,
    QueryType,
    RegionAccess,
    hash_secret,
)
from shared.db import (
    Database,
    SqliteClientRepository,
    SqliteGameRepository,
    SqliteProviderRepository,
    SqliteServerRepository,
    SqliteTokenRepository,
)

if TYPE_CHECKING:
    from pathlib import Path

    from shared.dal.models import Server


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeHandler:
    """Records create/destroy calls; a reserved token is persisted before a forced failure."""

    def __init__(self, servers: SqliteServerRepository) -> None:
        self._servers = servers
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.fail_create = False
        self.fail_destroy = False
        self.reserve_token: str | None = None

    async def create_instance(self, server: Server) -> Server:
        if self.reserve_token:
            server = server.with_data(gs_token=self.reserve_token)
            await self._servers.save(server)
        if self.fail_create:
            raise ProvisioningError("compute quota exceeded")
        self.created.append(server.id)
        return server.model_copy(update={"ip": "10.0.0.9", "port": 25565, "image": "itzg/minecraft-server"})

    async def destroy_instance(self, server: Server) -> None:
        if self.fail_destroy:
            raise ProvisioningError("provider api unavailable")
        self.destroyed.append(server.id)


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "manager.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def servers(db: Database) -> SqliteServerRepository:
    return SqliteServerRepository(db)


@pytest.fixture
def tokens(db: Database) -> SqliteTokenRepository:
    return SqliteTokenRepository(db)


@pytest.fixture
def providers(db: Database) -> SqliteProviderRepository:
    return SqliteProviderRepository(db)


@pytest.fixture
def games(db: Database) -> SqliteGameRepository:
    return SqliteGameRepository(db)


@pytest.fixture
def clients(db: Database) -> SqliteClientRepository:
    return SqliteClientRepository(db)


@pytest.fixture
async def seeded(games: SqliteGameRepository, providers: SqliteProviderRepository) -> None:
    await games.upsert(Game(slug="minecraft", query_type=QueryType.MINECRAFT))
    await games.upsert(Game(slug="tf2", query_type=QueryType.A2S))
    await providers.upsert(
        Provider(
            id="k8s-eu-1",
            kind=ProviderKind.KUBERNETES_NODE,
            region="eu",
            limit=3,
            metadata={"ports": {"min": 27000, "max": 27100}},
        ),
    )


@pytest.fixture
def client() -> Client:
    return Client(
        id="bookings",
        secret_hash=hash_secret("bookings-secret"),
        access=ClientAccess(
            games=["minecraft", "tf2"],
            limit=5,
            regions={"eu": RegionAccess(limit=3)},
            close_timer_limit=1800,
            wait_timer_limit=600,
        ),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def jobs():
    runner = JobRunner()
    yield runner
    await runner.cancel_all()


@pytest.fixture
def callbacks() -> list[httpx.Request]:
    return []


@pytest.fixture
def notifications(jobs: JobRunner, callbacks: list[httpx.Request]) -> NotificationDispatcher:
    def record(request: httpx.Request) -> httpx.Response:
        callbacks.append(request)
        return httpx.Response(200)

    return NotificationDispatcher(jobs, transport=httpx.MockTransport(record))


@pytest.fixture
def token_pool(tokens: SqliteTokenRepository, servers: SqliteServerRepository) -> TokenPool:
    return TokenPool(tokens, servers)


@pytest.fixture
def registry(
    providers: SqliteProviderRepository,
    servers: SqliteServerRepository,
    token_pool: TokenPool,
) -> ProviderRegistry:
    return ProviderRegistry(
        providers,
        servers,
        cache=ClientCache(),
        ports=PortAllocator(servers),
        tokens=token_pool,
        settings=ProvisioningSettings(),
    )


@pytest.fixture
def handler(registry: ProviderRegistry, servers: SqliteServerRepository, monkeypatch) -> FakeHandler:
    fake = FakeHandler(servers)
    monkeypatch.setattr(registry, "handler_for", lambda _provider, _game: fake)
    return fake


@pytest.fixture
def catalog(games: SqliteGameRepository) -> GameCatalog:
    return GameCatalog(games)


@pytest.fixture
def lifecycle(
    servers: SqliteServerRepository,
    catalog: GameCatalog,
    registry: ProviderRegistry,
    token_pool: TokenPool,
    jobs: JobRunner,
    notifications: NotificationDispatcher,
    clock: FakeClock,
    handler: FakeHandler,  # noqa: ARG001
) -> ServerLifecycleController:
    return ServerLifecycleController(
        servers,
        catalog=catalog,
        registry=registry,
        tokens=token_pool,
        jobs=jobs,
        notifications=notifications,
        defaults=ServerDefaults(close_min_players=2, close_idle_time=900, close_wait_time=300),
        clock=clock,
    )
