"""Read-only game catalog lookup."""

from __future__ import annotations

from typing import TYPE_CHECKING

from games.profiles import get_profile

if TYPE_CHECKING:
    from games.profiles import GameProfile
    from shared.dal.game_repository import GameRepository
    from shared.dal.models import Game


class GameCatalog:
    def __init__(self, repository: GameRepository) -> None:
        self._repository = repository

    async def get(self, slug: str) -> Game | None:
        return await self._repository.get(slug)

    @staticmethod
    def profile_for(game: Game) -> GameProfile:
        """Raises UnknownProfileError for a catalog entry without launch rules."""
        return get_profile(game.profile_key)
