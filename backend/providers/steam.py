"""Steam game-server login tokens via the IGameServersService web API."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import httpx
import structlog

from providers.allocator import TokenUnavailableError
from shared.dal.models import Token

if TYPE_CHECKING:
    from providers.settings import ProvisioningSettings

logger = structlog.get_logger()

# Statuses Steam answers with for a login token it does not recognize.
_UNKNOWN_TOKEN_STATUSES = frozenset({httpx.codes.BAD_REQUEST, httpx.codes.NOT_FOUND})


class SteamTokenIssuer:
    """Creates and validates game-server accounts with the Steam web API."""

    def __init__(
        self,
        *,
        api_key: str,
        app_id: int,
        memo: str = "Lighthouse",
        base_url: str = "https://api.steampowered.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._app_id = app_id
        self._memo = memo
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: ProvisioningSettings) -> SteamTokenIssuer:
        return cls(
            api_key=settings.steam_api_key,
            app_id=settings.steam_app_id,
            memo=settings.steam_token_memo,
            base_url=settings.steam_api_url,
            timeout=settings.http_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    async def create(self) -> Token:
        async with self._client() as client:
            try:
                response = await client.post(
                    "/IGameServersService/CreateAccount/v1/",
                    data={"key": self._api_key, "appid": self._app_id, "memo": self._memo},
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise TokenUnavailableError(f"Steam token creation failed: {e!r}") from e

        body = response.json().get("response", {})
        login_token = body.get("login_token")
        if not login_token:
            raise TokenUnavailableError("Steam returned no login token")
        logger.info("steam token created", steam_id=body.get("steamid", ""))
        return Token(login_token=login_token, steam_id=str(body.get("steamid", "")))

    async def is_valid(self, token: Token) -> bool:
        """False when Steam reports the token banned, expired or unknown."""
        async with self._client() as client:
            try:
                response = await client.get(
                    "/IGameServersService/QueryLoginToken/v1/",
                    params={"key": self._api_key, "login_token": token.login_token},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in _UNKNOWN_TOKEN_STATUSES:
                    raise TokenUnavailableError(f"Steam token query unavailable: {e!r}") from e
                logger.warning("steam rejected token query", steam_id=token.steam_id)
                return False
            except httpx.HTTPError as e:
                raise TokenUnavailableError(f"Steam token query failed: {e!r}") from e

        body = response.json().get("response", {})
        if not body or body.get("is_banned"):
            return False
        expires = int(body.get("expires") or 0)
        return expires == 0 or expires > time.time()
