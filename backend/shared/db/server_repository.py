"""SQLite-backed server repository."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import structlog

from shared.dal.models import TERMINAL_STATUSES, Server, ServerStatus
from shared.dal.server_repository import ServerRepository

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shared.db.connection import Database

logger = structlog.get_logger()

_TERMINAL = tuple(status.value for status in TERMINAL_STATUSES)
_NOT_TERMINAL_SQL = f"status NOT IN ({', '.join('?' * len(_TERMINAL))})"


class SqliteServerRepository(ServerRepository):
    """SQLite implementation of ServerRepository.

    Stores the full server document as JSON next to indexed columns
    (client, provider, region, status). Status writes are conditional on the
    stored status so concurrent monitor sweeps and API calls cannot clobber
    each other.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def create(self, server: Server) -> None:
        async with self._lock:
            self._db.connection.execute(
                "INSERT INTO servers (id, client_id, provider_id, region, status, created_at, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    server.id,
                    server.client_id,
                    server.provider_id,
                    server.region,
                    server.status.value,
                    server.created_at.isoformat(),
                    server.model_dump_json(),
                ),
            )
            self._db.connection.commit()

    async def get(self, server_id: str) -> Server | None:
        row = self._db.connection.execute("SELECT data FROM servers WHERE id = ?", (server_id,)).fetchone()
        if row is None:
            return None
        return Server.model_validate(json.loads(row[0]))

    async def save(self, server: Server) -> bool:
        async with self._lock:
            return self._conditional_update(server, server.status)

    async def compare_and_set(self, server: Server, expected: ServerStatus) -> bool:
        async with self._lock:
            updated = self._conditional_update(server, expected)
        if not updated:
            logger.info(
                "status write lost race",
                server_id=server.id,
                expected=expected,
                wanted=server.status,
            )
        return updated

    def _conditional_update(self, server: Server, expected: ServerStatus) -> bool:
        cursor = self._db.connection.execute(
            "UPDATE servers SET status = ?, data = ? WHERE id = ? AND status = ?",
            (server.status.value, server.model_dump_json(), server.id, expected.value),
        )
        self._db.connection.commit()
        return cursor.rowcount == 1

    async def list_by_status(self, statuses: Iterable[ServerStatus]) -> list[Server]:
        values = [status.value for status in statuses]
        if not values:
            return []
        rows = self._db.connection.execute(
            f"SELECT data FROM servers WHERE status IN ({', '.join('?' * len(values))}) ORDER BY created_at",  # noqa: S608
            values,
        ).fetchall()
        return [Server.model_validate(json.loads(row[0])) for row in rows]

    async def list_for_client(
        self,
        client_id: str | None,
        *,
        active_only: bool = True,
        limit: int | None = 50,
    ) -> list[Server]:
        clauses: list[str] = []
        params: list[object] = []
        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        if active_only:
            clauses.append(_NOT_TERMINAL_SQL)
            params.extend(_TERMINAL)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.connection.execute(
            f"SELECT data FROM servers {where} ORDER BY created_at DESC LIMIT ?",  # noqa: S608
            [*params, -1 if limit is None else limit],
        ).fetchall()
        return [Server.model_validate(json.loads(row[0])) for row in rows]

    async def count_active(
        self,
        *,
        client_id: str | None = None,
        region: str | None = None,
        provider_id: str | None = None,
    ) -> int:
        clauses = [_NOT_TERMINAL_SQL]
        params: list[object] = list(_TERMINAL)
        for column, value in (("client_id", client_id), ("region", region), ("provider_id", provider_id)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM servers WHERE {' AND '.join(clauses)}",  # noqa: S608
            params,
        ).fetchone()
        return row[0]

    async def ports_in_use(self, provider_id: str) -> set[int]:
        rows = self._db.connection.execute(
            "SELECT json_extract(data, '$.port') FROM servers "
            f"WHERE provider_id = ? AND {_NOT_TERMINAL_SQL} AND json_extract(data, '$.port') IS NOT NULL",  # noqa: S608
            (provider_id, *_TERMINAL),
        ).fetchall()
        return {int(row[0]) for row in rows}

    async def tokens_in_use(self) -> set[str]:
        rows = self._db.connection.execute(
            "SELECT json_extract(data, '$.data.gs_token') FROM servers "
            f"WHERE {_NOT_TERMINAL_SQL} AND json_extract(data, '$.data.gs_token') IS NOT NULL",  # noqa: S608
            _TERMINAL,
        ).fetchall()
        return {row[0] for row in rows}
