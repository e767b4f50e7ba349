"""SQLite-backed game catalog repository."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

from shared.dal.game_repository import GameRepository
from shared.dal.models import Game

if TYPE_CHECKING:
    from shared.db.connection import Database


class SqliteGameRepository(GameRepository):
    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def upsert(self, game: Game) -> None:
        async with self._lock:
            self._db.connection.execute(
                "INSERT INTO games (slug, data) VALUES (?, ?) ON CONFLICT(slug) DO UPDATE SET data = excluded.data",
                (game.slug, game.model_dump_json()),
            )
            self._db.connection.commit()

    async def get(self, slug: str) -> Game | None:
        row = self._db.connection.execute("SELECT data FROM games WHERE slug = ?", (slug,)).fetchone()
        if row is None:
            return None
        return Game.model_validate(json.loads(row[0]))
