"""SQLite-backed API client repository."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

from shared.dal.client_repository import ClientRepository
from shared.dal.models import Client

if TYPE_CHECKING:
    from shared.db.connection import Database


class SqliteClientRepository(ClientRepository):
    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def upsert(self, client: Client) -> None:
        async with self._lock:
            self._db.connection.execute(
                "INSERT INTO clients (id, secret_hash, data) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET secret_hash = excluded.secret_hash, data = excluded.data",
                (client.id, client.secret_hash, client.model_dump_json()),
            )
            self._db.connection.commit()

    async def get(self, client_id: str) -> Client | None:
        row = self._db.connection.execute("SELECT data FROM clients WHERE id = ?", (client_id,)).fetchone()
        if row is None:
            return None
        return Client.model_validate(json.loads(row[0]))

    async def get_by_secret_hash(self, secret_hash: str) -> Client | None:
        row = self._db.connection.execute(
            "SELECT data FROM clients WHERE secret_hash = ?",
            (secret_hash,),
        ).fetchone()
        if row is None:
            return None
        return Client.model_validate(json.loads(row[0]))
