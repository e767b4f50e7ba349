"""User model for Starlette AuthenticationMiddleware integration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.authentication import BaseUser

if TYPE_CHECKING:
    from shared.dal.models import Client


class AuthenticatedClient(BaseUser):
    """API consumer behind ``request.user``, created from a valid bearer secret."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return self._client.name or self._client.id

    @property
    def identity(self) -> str:
        return self._client.id

    @property
    def client(self) -> Client:
        return self._client
