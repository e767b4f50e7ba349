"""Shared fixtures for provider tests: a temporary database and its repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shared.db import Database, SqliteProviderRepository, SqliteServerRepository, SqliteTokenRepository

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "providers.db")
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
