"""SQLite database layer: connection management and repository implementations."""

from shared.db.client_repository import SqliteClientRepository
from shared.db.connection import Database
from shared.db.game_repository import SqliteGameRepository
from shared.db.provider_repository import SqliteProviderRepository
from shared.db.server_repository import SqliteServerRepository
from shared.db.token_repository import SqliteTokenRepository

__all__ = [
    "Database",
    "SqliteClientRepository",
    "SqliteGameRepository",
    "SqliteProviderRepository",
    "SqliteServerRepository",
    "SqliteTokenRepository",
]
