"""
Тесты клиента API торговой сети
"""
import json
from datetime import datetime, timezone

import httpx
import pytest

from tradeframe.errors import TradingApiError
from tradeframe.services.trading_network_client import TradingNetworkClient
from tradeframe.storage import MemoryStorage

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
TRADING_API_URL = "https://pos.example.test/tms"
FIXED_NOW_MS = FIXED_NOW.timestamp() * 1000
TOKEN_TTL_MS = 20 * 60 * 1000


def make_client(handler, storage=None, username="UserApi", password="secret") -> TradingNetworkClient:
    return TradingNetworkClient(
        storage or MemoryStorage(),
        default_url=TRADING_API_URL,
        username=username,
        password=password,
        transport=httpx.MockTransport(handler),
        time_func=lambda: FIXED_NOW.timestamp()
    )


class TestLogin:
    """Тесты авторизации и хранения токена"""

    @pytest.mark.asyncio
    async def test_login_strips_quotes_and_persists_token(self, trading_client, storage, fake_trading_api):
        token = await trading_client.login()

        assert token == "token-1"
        saved = storage.load("sts-api-config")
        assert saved["token"] == "token-1"
        assert saved["tokenExpiry"] == FIXED_NOW_MS + TOKEN_TTL_MS

        login_request = fake_trading_api.requests[0]
        assert login_request.method == "POST"
        assert json.loads(login_request.content) == {"username": "UserApi", "password": "secret"}

    @pytest.mark.asyncio
    async def test_stored_credentials_take_precedence(self, storage, fake_trading_api):
        storage.save("sts-api-config", {"username": "stored", "password": "stored-pass"})
        client = make_client(fake_trading_api, storage=storage)

        await client.login()

        body = json.loads(fake_trading_api.requests[0].content)
        assert body == {"username": "stored", "password": "stored-pass"}
        assert storage.load("sts-api-config")["username"] == "stored"

    @pytest.mark.asyncio
    async def test_stored_url_overrides_default(self, storage, fake_trading_api):
        storage.save("sts-api-config", {"url": "https://other.example.test/tms/"})
        client = make_client(fake_trading_api, storage=storage)

        await client.get_services(15)

        assert all(r.url.host == "other.example.test" for r in fake_trading_api.requests)
        assert client.base_url == "https://other.example.test/tms"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, fake_trading_api):
        client = make_client(fake_trading_api, username=None, password=None)

        with pytest.raises(TradingApiError, match="учетные данные"):
            await client.login()
        assert fake_trading_api.requests == []

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        client = make_client(lambda request: httpx.Response(403, text="Forbidden"))

        with pytest.raises(TradingApiError) as exc_info:
            await client.login()
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_empty_token(self):
        client = make_client(lambda request: httpx.Response(200, text='""'))

        with pytest.raises(TradingApiError, match="токен"):
            await client.login()

    @pytest.mark.asyncio
    async def test_login_network_error(self):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TradingApiError, match="Ошибка подключения"):
            await make_client(fail).login()


class TestTokenReuse:
    """Тесты повторного использования и обновления токена"""

    @pytest.mark.asyncio
    async def test_valid_token_reused(self, trading_client, fake_trading_api):
        await trading_client.get_services(15)
        await trading_client.get_services(15)

        assert fake_trading_api.logins == 1
        assert fake_trading_api.paths() == ["/v1/login", "/v1/services", "/v1/services"]

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self, storage, fake_trading_api):
        fake_trading_api.valid_tokens.add("expired")
        storage.save("sts-api-config", {"token": "expired", "tokenExpiry": FIXED_NOW_MS - 1})
        client = make_client(fake_trading_api, storage=storage)

        await client.get_services(15)

        assert fake_trading_api.logins == 1
        assert fake_trading_api.requests[-1].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_once(self, storage, fake_trading_api):
        """Токен еще не истек, но сервер его не принимает"""
        storage.save("sts-api-config", {"token": "stale", "tokenExpiry": FIXED_NOW_MS + 60000})
        client = make_client(fake_trading_api, storage=storage)

        services = await client.get_services(15)

        assert services == [{"service_code": 2, "service_name": "АИ-92"}]
        assert fake_trading_api.paths() == ["/v1/services", "/v1/login", "/v1/services"]
        assert storage.load("sts-api-config")["token"] == "token-1"

    @pytest.mark.asyncio
    async def test_second_unauthorized_raises(self, trading_client, fake_trading_api):
        fake_trading_api.responses["/v1/services"] = lambda request: httpx.Response(401, text="Unauthorized")

        with pytest.raises(TradingApiError) as exc_info:
            await trading_client.get_services(15)

        assert exc_info.value.status_code == 401
        assert fake_trading_api.logins == 2

    def test_corrupted_settings_ignored(self, storage, fake_trading_api):
        storage.save("sts-api-config", {"tokenExpiry": "завтра"})
        client = make_client(fake_trading_api, storage=storage)

        assert client.get_settings().token is None
        assert client.is_token_valid() is False


class TestRequests:
    """Тесты методов API"""

    @pytest.mark.asyncio
    async def test_coupons_params(self, trading_client, fake_trading_api, coupons_api_response):
        data = await trading_client.get_coupons(15, station=4)

        assert data == coupons_api_response
        params = fake_trading_api.requests[-1].url.params
        assert params["system"] == "15"
        assert params["station"] == "4"
        assert "dt_beg" not in params
        assert fake_trading_api.requests[-1].headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_prices_default_date(self, trading_client, fake_trading_api):
        prices = await trading_client.get_prices(4, 15)

        request = fake_trading_api.requests[-1]
        assert request.url.path == "/tms/v1/pos/prices/4"
        assert request.url.params["date"] == "2024-06-15T12:00:00Z"
        assert prices["prices"][0]["price"] == 58.2

    @pytest.mark.asyncio
    async def test_info(self, trading_client, fake_trading_api):
        await trading_client.get_info(15, station=4)

        params = fake_trading_api.requests[-1].url.params
        assert (params["system"], params["station"]) == ("15", "4")

    @pytest.mark.asyncio
    async def test_http_error(self, trading_client, fake_trading_api):
        fake_trading_api.responses["/v1/services"] = lambda request: httpx.Response(500, text="Internal failure")

        with pytest.raises(TradingApiError) as exc_info:
            await trading_client.get_services(15)

        assert exc_info.value.status_code == 500
        assert exc_info.value.message.startswith("HTTP 500")
        assert "Internal failure" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_json(self, trading_client, fake_trading_api):
        fake_trading_api.responses["/v1/info"] = lambda request: httpx.Response(200, text="<html>")

        with pytest.raises(TradingApiError, match="Неверный формат ответа"):
            await trading_client.get_info(15)

    @pytest.mark.asyncio
    async def test_network_error(self, trading_client, fake_trading_api):
        def fail(request):
            raise httpx.ReadTimeout("timed out", request=request)

        fake_trading_api.responses["/v1/services"] = fail

        with pytest.raises(TradingApiError, match="Ошибка подключения"):
            await trading_client.get_services(15)

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, fake_trading_api):
        async with make_client(fake_trading_api) as client:
            await client.get_services(15)

        assert client.client.is_closed
