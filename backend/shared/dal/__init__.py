"""Data access layer: repository interfaces and shared persistence models."""

from shared.dal.client_repository import ClientRepository
from shared.dal.game_repository import GameRepository
from shared.dal.models import Client, Game, Provider, ProviderKind, Server, ServerStatus, Token
from shared.dal.provider_repository import ProviderRepository
from shared.dal.server_repository import ServerRepository
from shared.dal.token_repository import TokenRepository

__all__ = [
    "Client",
    "ClientRepository",
    "Game",
    "GameRepository",
    "Provider",
    "ProviderKind",
    "ProviderRepository",
    "Server",
    "ServerRepository",
    "ServerStatus",
    "Token",
    "TokenRepository",
]
