"""Tests for the provider, client and game repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shared.dal.models import Client, ClientAccess, Game, Provider, ProviderKind, QueryType, hash_secret
from shared.db.client_repository import SqliteClientRepository
from shared.db.connection import Database
from shared.db.game_repository import SqliteGameRepository
from shared.db.provider_repository import SqliteProviderRepository

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


class TestProviderRepository:
    async def test_list_by_region_orders_by_priority(self, db: Database) -> None:
        repo = SqliteProviderRepository(db)
        await repo.upsert(Provider(id="low", kind=ProviderKind.VULTR, region="eu", priority=1))
        await repo.upsert(Provider(id="high", kind=ProviderKind.DIGITAL_OCEAN, region="eu", priority=10))
        await repo.upsert(Provider(id="other", kind=ProviderKind.VULTR, region="us", priority=99))

        result = await repo.list_by_region("eu")
        assert [p.id for p in result] == ["high", "low"]

    async def test_upsert_overwrites(self, db: Database) -> None:
        repo = SqliteProviderRepository(db)
        await repo.upsert(Provider(id="p1", kind=ProviderKind.VULTR, region="eu", limit=1))
        await repo.upsert(Provider(id="p1", kind=ProviderKind.VULTR, region="eu", limit=5))

        result = await repo.get("p1")
        assert result is not None
        assert result.limit == 5

    async def test_get_unknown(self, db: Database) -> None:
        assert await SqliteProviderRepository(db).get("missing") is None


class TestClientRepository:
    async def test_lookup_by_secret_hash(self, db: Database) -> None:
        repo = SqliteClientRepository(db)
        client = Client(id="c1", secret_hash=hash_secret("s3cret"), access=ClientAccess(games=["tf2"], limit=2))
        await repo.upsert(client)

        assert await repo.get_by_secret_hash(hash_secret("s3cret")) == client
        assert await repo.get_by_secret_hash(hash_secret("wrong")) is None
        assert await repo.get("c1") == client


class TestGameRepository:
    async def test_upsert_and_get(self, db: Database) -> None:
        repo = SqliteGameRepository(db)
        await repo.upsert(Game(slug="tf2", query_type=QueryType.A2S, default_args={"map": "cp_badlands"}))
        await repo.upsert(Game(slug="minecraft", query_type=QueryType.MINECRAFT))

        tf2 = await repo.get("tf2")
        assert tf2 is not None
        assert tf2.default_args == {"map": "cp_badlands"}
        minecraft = await repo.get("minecraft")
        assert minecraft is not None
        assert minecraft.query_type == QueryType.MINECRAFT
        assert await repo.get("valheim") is None
