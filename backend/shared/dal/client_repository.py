"""Abstract interface for API client persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Client


class ClientRepository(ABC):
    @abstractmethod
    async def upsert(self, client: Client) -> None: ...

    @abstractmethod
    async def get(self, client_id: str) -> Client | None: ...

    @abstractmethod
    async def get_by_secret_hash(self, secret_hash: str) -> Client | None: ...
