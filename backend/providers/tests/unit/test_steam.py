import time

import httpx
import pytest

from providers.allocator import TokenPool, TokenUnavailableError
from providers.settings import ProvisioningSettings
from providers.steam import SteamTokenIssuer
from shared.dal.models import Token
from shared.db import SqliteServerRepository, SqliteTokenRepository


def _issuer(handler) -> SteamTokenIssuer:
    return SteamTokenIssuer(api_key="steam-key", app_id=440, transport=httpx.MockTransport(handler))


class TestCreate:
    async def test_returns_new_token(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"response": {"steamid": "85568392920040000", "login_token": "ABC"}})

        token = await _issuer(handler).create()

        assert token == Token(login_token="ABC", steam_id="85568392920040000")
        assert seen[0].url.path == "/IGameServersService/CreateAccount/v1/"
        assert b"appid=440" in seen[0].content
        assert b"key=steam-key" in seen[0].content

    async def test_missing_token_raises(self):
        issuer = _issuer(lambda request: httpx.Response(200, json={"response": {}}))

        with pytest.raises(TokenUnavailableError, match="no login token"):
            await issuer.create()

    async def test_http_error_raises(self):
        issuer = _issuer(lambda request: httpx.Response(403))

        with pytest.raises(TokenUnavailableError, match="creation failed"):
            await issuer.create()


class TestIsValid:
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            ({"response": {"is_banned": False, "expires": 0}}, True),
            ({"response": {"is_banned": False, "expires": int(time.time()) + 3600}}, True),
            ({"response": {"is_banned": False, "expires": int(time.time()) - 3600}}, False),
            ({"response": {"is_banned": True, "expires": 0}}, False),
            ({"response": {}}, False),
        ],
    )
    async def test_validity(self, body, expected):
        issuer = _issuer(lambda request: httpx.Response(200, json=body))

        assert await issuer.is_valid(Token(login_token="ABC")) is expected

    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_rejected_query_means_invalid(self, status_code):
        issuer = _issuer(lambda request: httpx.Response(status_code))

        assert await issuer.is_valid(Token(login_token="ABC")) is False

    @pytest.mark.parametrize("status_code", [401, 403, 429, 500, 503])
    async def test_unavailable_steam_raises(self, status_code):
        issuer = _issuer(lambda request: httpx.Response(status_code))

        with pytest.raises(TokenUnavailableError, match="unavailable"):
            await issuer.is_valid(Token(login_token="ABC"))

    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(TokenUnavailableError, match="query failed"):
            await _issuer(handler).is_valid(Token(login_token="ABC"))


def test_from_settings_uses_provisioning_settings():
    settings = ProvisioningSettings(steam_api_key="k", steam_app_id=892970, steam_token_memo="valheim")

    issuer = SteamTokenIssuer.from_settings(settings)

    assert issuer._app_id == 892970
    assert issuer._memo == "valheim"


class TestPoolDuringOutage:
    async def test_steam_outage_keeps_pooled_token(
        self,
        tokens: SqliteTokenRepository,
        servers: SqliteServerRepository,
    ):
        await tokens.add(Token(login_token="t1", steam_id="1"))
        pool = TokenPool(tokens, servers, _issuer(lambda request: httpx.Response(503)))

        with pytest.raises(TokenUnavailableError):
            await pool.reserve()

        stored = await tokens.get("t1")
        assert stored is not None
        assert stored.in_use is False
