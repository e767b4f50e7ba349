"""SQLite-backed login token pool."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import TYPE_CHECKING

import structlog

from shared.dal.models import Token
from shared.dal.token_repository import TokenRepository

if TYPE_CHECKING:
    from collections.abc import Collection

    from shared.db.connection import Database

logger = structlog.get_logger()


class SqliteTokenRepository(TokenRepository):
    """SQLite implementation of TokenRepository.

    The in_use column is authoritative; the JSON document mirrors it via
    json_set so reads never disagree with the index.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def add(self, token: Token) -> None:
        async with self._lock:
            try:
                self._db.connection.execute(
                    "INSERT INTO tokens (login_token, in_use, data) VALUES (?, ?, ?)",
                    (token.login_token, int(token.in_use), token.model_dump_json()),
                )
                self._db.connection.commit()
            except sqlite3.IntegrityError:
                self._db.connection.rollback()
                logger.warning("token already exists, ignoring duplicate add", steam_id=token.steam_id)

    async def get(self, login_token: str) -> Token | None:
        row = self._db.connection.execute("SELECT data FROM tokens WHERE login_token = ?", (login_token,)).fetchone()
        if row is None:
            return None
        return Token.model_validate(json.loads(row[0]))

    async def find_free(self, exclude: Collection[str] = ()) -> Token | None:
        excluded = list(exclude)
        not_in = f"AND login_token NOT IN ({', '.join('?' * len(excluded))})" if excluded else ""
        row = self._db.connection.execute(
            f"SELECT data FROM tokens WHERE in_use = 0 {not_in} ORDER BY rowid LIMIT 1",  # noqa: S608
            excluded,
        ).fetchone()
        if row is None:
            return None
        return Token.model_validate(json.loads(row[0]))

    async def set_in_use(self, login_token: str, *, in_use: bool) -> bool:
        async with self._lock:
            cursor = self._db.connection.execute(
                "UPDATE tokens SET in_use = ?, data = json_set(data, '$.in_use', json(?)) "
                "WHERE login_token = ? AND in_use = ?",
                (int(in_use), "true" if in_use else "false", login_token, int(not in_use)),
            )
            self._db.connection.commit()
            return cursor.rowcount == 1

    async def delete(self, login_token: str) -> None:
        async with self._lock:
            self._db.connection.execute("DELETE FROM tokens WHERE login_token = ?", (login_token,))
            self._db.connection.commit()
