import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from games.query import ProbeResult, QueryError
from games.rcon import RconError
from games.setup import InitialSetup
from manager.servers.monitor import HealthMonitor
from manager.servers.types import CreateServerRequest
from shared.dal.models import QueryType, Server, ServerStatus

_THRESHOLDS = {"close_min_players": 2, "close_idle_time": 900, "close_wait_time": 300}

pytestmark = pytest.mark.usefixtures("seeded")


def _server(server_id: str, status: ServerStatus, **fields) -> Server:
    return Server(
        id=server_id,
        client_id="bookings",
        game=fields.pop("game", "minecraft"),
        provider_id="k8s-eu-1",
        region="eu",
        status=status,
        ip="10.0.0.9",
        port=25565,
        created_at=datetime(2025, 3, 1, 11, 0, tzinfo=UTC),
        data={**_THRESHOLDS, **fields.pop("data", {})},
        **fields,
    )


def _players(count: int) -> ProbeResult:
    return ProbeResult(player_count=count)


@pytest.fixture
def probe() -> AsyncMock:
    return AsyncMock(return_value=_players(0))


@pytest.fixture
def initial_setup() -> InitialSetup:
    return InitialSetup(sleep=AsyncMock())


@pytest.fixture
def monitor(servers, lifecycle, catalog, initial_setup, jobs, probe, clock) -> HealthMonitor:
    return HealthMonitor(
        servers,
        lifecycle=lifecycle,
        catalog=catalog,
        setup=initial_setup,
        jobs=jobs,
        interval=0.01,
        probe_func=probe,
        clock=clock,
    )


class TestHeartbeat:
    async def test_first_heartbeat_brings_server_to_idle(self, monitor, servers, probe, clock):
        server = _server("srv-1", ServerStatus.WAITING, close_at=clock.now + timedelta(seconds=300))
        await servers.create(server)

        await monitor.check_heartbeat(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.IDLE
        assert stored.close_at is None
        probe.assert_awaited_once_with("10.0.0.9", 25565, QueryType.MINECRAFT, timeout=5.0)

    async def test_failed_heartbeat_arms_idle_deadline(self, monitor, servers, probe, clock):
        probe.side_effect = QueryError("timed out")
        server = _server("srv-1", ServerStatus.WAITING)
        await servers.create(server)

        await monitor.check_heartbeat(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.WAITING
        assert stored.close_at == clock.now + timedelta(seconds=900)

    async def test_failed_heartbeat_keeps_existing_deadline(self, monitor, servers, probe, clock):
        probe.side_effect = QueryError("timed out")
        deadline = clock.now + timedelta(seconds=30)
        server = _server("srv-1", ServerStatus.WAITING, close_at=deadline)
        await servers.create(server)

        await monitor.check_heartbeat(server)

        assert (await servers.get("srv-1")).close_at == deadline

    async def test_failed_setup_leaves_server_setting_up(
        self,
        monitor,
        servers,
        initial_setup,
        clock,
        caplog,
        monkeypatch,
    ):
        monkeypatch.setattr(initial_setup, "configure", AsyncMock(side_effect=RconError("RCON authentication failed")))
        server = _server("srv-1", ServerStatus.WAITING, game="tf2", data={"rcon_password": "rc"})
        await servers.create(server)

        with caplog.at_level(logging.WARNING):
            await monitor.check_heartbeat(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.SETTING_UP
        assert stored.close_at == clock.now + timedelta(seconds=900)
        assert "initial setup failed" in caplog.text

    async def test_setup_results_are_persisted(self, monitor, servers, initial_setup, monkeypatch):
        async def discover(server, _profile):
            return server.with_data(sdr_ip="169.254.10.20", sdr_port=41000)

        monkeypatch.setattr(initial_setup, "discover_endpoint", discover)
        server = _server("srv-1", ServerStatus.WAITING, game="tf2")
        await servers.create(server)

        await monitor.check_heartbeat(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.IDLE
        assert stored.data["sdr_ip"] == "169.254.10.20"

    async def test_discovered_endpoint_survives_failed_configuration(
        self,
        monitor,
        servers,
        initial_setup,
        callbacks,
        jobs,
        monkeypatch,
    ):
        async def discover(server, _profile):
            return server.with_data(sdr_ip="169.254.10.20", sdr_port=41000)

        monkeypatch.setattr(initial_setup, "discover_endpoint", discover)
        monkeypatch.setattr(initial_setup, "configure", AsyncMock(side_effect=RconError("connection reset")))
        server = _server("srv-1", ServerStatus.WAITING, game="tf2", data={"callback_url": "https://hooks.example.com/lh"})
        await servers.create(server)

        await monitor.check_heartbeat(server)
        await jobs.drain()

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.SETTING_UP
        assert stored.data["sdr_ip"] == "169.254.10.20"
        assert stored.data["sdr_port"] == 41000
        assert [request.url.params["status"] for request in callbacks] == ["SETTING_UP"]

    async def test_server_without_address_fails_heartbeat(self, servers, lifecycle, catalog, initial_setup, jobs, clock):
        monitor = HealthMonitor(
            servers,
            lifecycle=lifecycle,
            catalog=catalog,
            setup=initial_setup,
            jobs=jobs,
            clock=clock,
        )
        server = _server("srv-1", ServerStatus.WAITING).model_copy(update={"ip": None, "port": None})
        await servers.create(server)

        await monitor.check_heartbeat(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.WAITING
        assert stored.close_at == clock.now + timedelta(seconds=900)


class TestOccupancy:
    async def test_enough_players_mark_server_running(self, monitor, servers, probe, clock):
        probe.return_value = _players(3)
        server = _server("srv-1", ServerStatus.IDLE, close_at=clock.now)
        await servers.create(server)

        await monitor.check_occupancy(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.RUNNING
        assert stored.close_at is None

    async def test_too_few_players_mark_server_idle(self, monitor, servers, probe, clock):
        probe.return_value = _players(1)
        server = _server("srv-1", ServerStatus.RUNNING)
        await servers.create(server)

        await monitor.check_occupancy(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.IDLE
        assert stored.close_at == clock.now + timedelta(seconds=900)

    async def test_idle_deadline_is_not_pushed_back(self, monitor, servers, clock):
        deadline = clock.now + timedelta(seconds=100)
        server = _server("srv-1", ServerStatus.IDLE, close_at=deadline)
        await servers.create(server)

        clock.advance(50)
        await monitor.check_occupancy(server)

        assert (await servers.get("srv-1")).close_at == deadline

    async def test_unreachable_server_becomes_unknown(self, monitor, servers, probe, clock):
        probe.side_effect = QueryError("connection refused")
        server = _server("srv-1", ServerStatus.RUNNING)
        await servers.create(server)

        await monitor.check_occupancy(server)

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.UNKNOWN
        assert stored.close_at == clock.now + timedelta(seconds=900)

    async def test_unknown_server_recovers(self, monitor, servers, probe, clock):
        probe.return_value = _players(5)
        server = _server("srv-1", ServerStatus.UNKNOWN, close_at=clock.now)
        await servers.create(server)

        await monitor.check_occupancy(server)

        assert (await servers.get("srv-1")).status == ServerStatus.RUNNING

    async def test_game_missing_from_catalog_is_skipped(self, monitor, servers, probe, caplog):
        server = _server("srv-1", ServerStatus.IDLE, game="quake")
        await servers.create(server)

        with caplog.at_level(logging.WARNING):
            await monitor.check_occupancy(server)

        probe.assert_not_awaited()
        assert (await servers.get("srv-1")).status == ServerStatus.IDLE
        assert "server game missing from catalog" in caplog.text


class TestTick:
    async def test_expired_server_is_closed_exactly_once(self, monitor, servers, handler, jobs, clock):
        await servers.create(_server("srv-1", ServerStatus.IDLE, close_at=clock.now - timedelta(seconds=1)))

        await monitor.tick()
        await monitor.tick()
        await jobs.drain()
        await monitor.tick()
        await jobs.drain()

        stored = await servers.get("srv-1")
        assert stored.status == ServerStatus.CLOSED
        assert handler.destroyed == ["srv-1"]

    async def test_deadline_is_exclusive(self, monitor, servers, handler, jobs, clock):
        await servers.create(_server("srv-1", ServerStatus.IDLE, close_at=clock.now))

        await monitor.tick()
        await jobs.drain()

        assert (await servers.get("srv-1")).status == ServerStatus.IDLE
        assert handler.destroyed == []

    @pytest.mark.parametrize("status", [ServerStatus.WAITING, ServerStatus.SETTING_UP, ServerStatus.UNKNOWN])
    async def test_every_expirable_status_is_reclaimed(self, monitor, servers, probe, handler, jobs, clock, status):
        probe.side_effect = QueryError("timed out")
        await servers.create(_server("srv-1", status, close_at=clock.now - timedelta(seconds=1)))

        await monitor.tick()
        await jobs.drain()

        assert (await servers.get("srv-1")).status == ServerStatus.CLOSED

    async def test_closing_servers_are_left_alone(self, monitor, servers, probe, jobs, clock):
        await servers.create(_server("srv-1", ServerStatus.CLOSING, close_at=clock.now - timedelta(hours=1)))

        await monitor.tick()

        assert len(jobs) == 0
        probe.assert_not_awaited()

    async def test_full_lifecycle_to_closed(
        self,
        monitor,
        lifecycle,
        client,
        servers,
        handler,
        jobs,
        probe,
        clock,
        callbacks,
    ):
        created = await lifecycle.create_request(
            client,
            CreateServerRequest(
                game="minecraft",
                region="eu",
                provider="k8s-eu-1",
                data={"callback_url": "https://hooks.example.com/lighthouse"},
            ),
        )
        await jobs.drain()
        assert (await servers.get(created.id)).status == ServerStatus.WAITING

        await monitor.tick()
        await jobs.drain()
        assert (await servers.get(created.id)).status == ServerStatus.IDLE

        probe.return_value = _players(4)
        await monitor.tick()
        await jobs.drain()
        assert (await servers.get(created.id)).status == ServerStatus.RUNNING

        probe.return_value = _players(0)
        await monitor.tick()
        await jobs.drain()
        idle = await servers.get(created.id)
        assert idle.status == ServerStatus.IDLE
        assert idle.close_at == clock.now + timedelta(seconds=900)

        clock.advance(901)
        await monitor.tick()
        await jobs.drain()

        assert (await servers.get(created.id)).status == ServerStatus.CLOSED
        assert handler.destroyed == [created.id]
        assert {request.url.params["status"] for request in callbacks} == {
            "ALLOCATING",
            "WAITING",
            "SETTING_UP",
            "IDLE",
            "RUNNING",
            "CLOSING",
            "DEALLOCATING",
            "CLOSED",
        }


class TestStartStop:
    async def test_loop_runs_ticks_until_stopped(self, monitor, servers, probe):
        await servers.create(_server("srv-1", ServerStatus.RUNNING))

        monitor.start()
        monitor.start()
        for _ in range(100):
            if probe.await_count:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        await monitor.stop()

        assert probe.await_count >= 1
