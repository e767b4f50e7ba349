"""Abstract interface for the game catalog store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Game


class GameRepository(ABC):
    @abstractmethod
    async def upsert(self, game: Game) -> None: ...

    @abstractmethod
    async def get(self, slug: str) -> Game | None: ...
