"""Abstract interface for server persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shared.dal.models import Server, ServerStatus


class ServerRepository(ABC):
    """Abstract interface for server persistence.

    Servers are never deleted; CLOSED and FAILED records are kept for audit.
    """

    @abstractmethod
    async def create(self, server: Server) -> None: ...

    @abstractmethod
    async def get(self, server_id: str) -> Server | None: ...

    @abstractmethod
    async def save(self, server: Server) -> bool:
        """Overwrite the stored document unless the stored status differs from ``server.status``.

        Used for field updates (ip, port, close_at, data) that must not
        clobber a concurrent status change. Returns False when it did.
        """

    @abstractmethod
    async def compare_and_set(self, server: Server, expected: ServerStatus) -> bool:
        """Store ``server`` only if the stored status is still ``expected``.

        Returns False when another writer changed the status first.
        """

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[ServerStatus]) -> list[Server]: ...

    @abstractmethod
    async def list_for_client(
        self,
        client_id: str | None,
        *,
        active_only: bool = True,
        limit: int | None = 50,
    ) -> list[Server]:
        """Newest first. ``client_id=None`` lists every client's servers; ``limit=None`` lists all."""

    @abstractmethod
    async def count_active(
        self,
        *,
        client_id: str | None = None,
        region: str | None = None,
        provider_id: str | None = None,
    ) -> int: ...

    @abstractmethod
    async def ports_in_use(self, provider_id: str) -> set[int]: ...

    @abstractmethod
    async def tokens_in_use(self) -> set[str]:
        """Login tokens referenced by non-terminal servers."""
