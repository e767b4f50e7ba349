"""Starlette AuthenticationBackend that validates client bearer secrets."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from starlette.authentication import AuthCredentials, AuthenticationBackend

from manager.auth.models import AuthenticatedClient
from shared.dal.models import hash_secret

if TYPE_CHECKING:
    from starlette.requests import HTTPConnection

    from shared.dal.client_repository import ClientRepository

logger = structlog.get_logger()


class BearerSecretBackend(AuthenticationBackend):
    """Authenticate requests via ``Authorization: Bearer <secret>``.

    Secrets are compared by SHA-256 digest; only the digest is stored.
    A missing, malformed or unknown secret leaves the request unauthenticated.
    """

    def __init__(self, clients: ClientRepository) -> None:
        self._clients = clients

    async def authenticate(
        self,
        conn: HTTPConnection,
    ) -> tuple[AuthCredentials, AuthenticatedClient] | None:
        header = conn.headers.get("authorization")
        if not header:
            return None
        scheme, _, secret = header.partition(" ")
        secret = secret.strip()
        if scheme.lower() != "bearer" or not secret:
            return None

        client = await self._clients.get_by_secret_hash(hash_secret(secret))
        if client is None:
            logger.info("rejected unknown client secret", path=conn.url.path)
            return None
        return AuthCredentials(["authenticated"]), AuthenticatedClient(client)
