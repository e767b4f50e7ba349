"""Abstract interface for the login token pool."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Collection

    from shared.dal.models import Token


class TokenRepository(ABC):
    @abstractmethod
    async def add(self, token: Token) -> None: ...

    @abstractmethod
    async def get(self, login_token: str) -> Token | None: ...

    @abstractmethod
    async def find_free(self, exclude: Collection[str] = ()) -> Token | None:
        """Return any token not marked in use and not in ``exclude``."""

    @abstractmethod
    async def set_in_use(self, login_token: str, *, in_use: bool) -> bool:
        """Flip the in-use flag. Returns False if the token is unknown or already in that state."""

    @abstractmethod
    async def delete(self, login_token: str) -> None: ...
