"""Abstract interface for provider persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Provider


class ProviderRepository(ABC):
    @abstractmethod
    async def upsert(self, provider: Provider) -> None: ...

    @abstractmethod
    async def get(self, provider_id: str) -> Provider | None: ...

    @abstractmethod
    async def list_by_region(self, region: str) -> list[Provider]:
        """Providers serving the region, highest priority first."""
