"""
Тесты API торговой сети
"""
from fastapi.testclient import TestClient


class TestTradingNetworkEndpoints:
    """Тесты проксирования запросов в API торговой сети"""

    def test_services(self, client: TestClient, fake_trading_api):
        response = client.get("/api/v1/trading-network/services")

        assert response.status_code == 200
        assert response.json()[0]["service_name"] == "АИ-92"
        assert fake_trading_api.requests[-1].url.params["system"] == "15"

    def test_prices(self, client: TestClient, fake_trading_api):
        response = client.get("/api/v1/trading-network/prices/4", params={"date": "2024-06-01T00:00:00Z"})

        assert response.status_code == 200
        assert response.json()["prices"][0]["price"] == 58.2
        request = fake_trading_api.requests[-1]
        assert request.url.path.endswith("/v1/pos/prices/4")
        assert request.url.params["date"] == "2024-06-01T00:00:00Z"

    def test_info(self, client: TestClient, fake_trading_api):
        response = client.get("/api/v1/trading-network/info", params={"system": 16, "station": 2})

        assert response.status_code == 200
        assert fake_trading_api.requests[-1].url.params["station"] == "2"

    def test_zero_system_rejected(self, client: TestClient, fake_trading_api):
        response = client.get("/api/v1/trading-network/services", params={"system": 0})

        assert response.status_code == 422
        assert fake_trading_api.requests == []

    def test_missing_credentials(self, client: TestClient, trading_client):
        trading_client.username = None
        trading_client.password = None

        response = client.get("/api/v1/trading-network/services")

        assert response.status_code == 502
        assert response.json()["upstream_status"] is None
