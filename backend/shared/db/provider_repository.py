"""SQLite-backed provider repository."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

from shared.dal.models import Provider
from shared.dal.provider_repository import ProviderRepository

if TYPE_CHECKING:
    from shared.db.connection import Database


class SqliteProviderRepository(ProviderRepository):
    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def upsert(self, provider: Provider) -> None:
        async with self._lock:
            self._db.connection.execute(
                "INSERT INTO providers (id, region, priority, data) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET region = excluded.region, "
                "priority = excluded.priority, data = excluded.data",
                (provider.id, provider.region, provider.priority, provider.model_dump_json()),
            )
            self._db.connection.commit()

    async def get(self, provider_id: str) -> Provider | None:
        row = self._db.connection.execute("SELECT data FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if row is None:
            return None
        return Provider.model_validate(json.loads(row[0]))

    async def list_by_region(self, region: str) -> list[Provider]:
        rows = self._db.connection.execute(
            "SELECT data FROM providers WHERE region = ? ORDER BY priority DESC, rowid",
            (region,),
        ).fetchall()
        return [Provider.model_validate(json.loads(row[0])) for row in rows]
