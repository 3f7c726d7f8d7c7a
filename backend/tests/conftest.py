"""
Pytest fixtures для тестов Tradeframe Backend
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List

import httpx
import pytest
from fastapi.testclient import TestClient

# Очищаем кэш settings перед импортом приложения
from tradeframe.config import get_settings
get_settings.cache_clear()

from tradeframe.dependencies import (
    get_coupons_business_service,
    get_coupons_service,
    get_database_client,
    get_template_repository,
    get_trading_client,
)
from tradeframe.main import app
from tradeframe.schemas import COUPON_STATE_ACTIVE
from tradeframe.services.command_templates import CommandTemplateRepository
from tradeframe.services.coupons_business_service import CouponsBusinessService
from tradeframe.services.coupons_service import CouponsApiService
from tradeframe.services.database_client import EnhancedDatabaseClient
from tradeframe.services.trading_network_client import TradingNetworkClient
from tradeframe.storage import MemoryStorage


# Фиксированный момент "сейчас" для детерминированных расчетов возраста
FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

TRADING_API_URL = "https://pos.example.test/tms"


def make_coupon(
    number: str = "C1",
    days_ago: float = 1,
    rest: float = 100,
    state: str = COUPON_STATE_ACTIVE,
    summ_total: float = None,
    **extra: Any
) -> Dict[str, Any]:
    """Купон в формате ответа API /v1/coupons"""
    summ_total = rest if summ_total is None else summ_total
    coupon = {
        "number": number,
        "dt_beg": (FIXED_NOW - timedelta(days=days_ago)).isoformat(),
        "pos": 1,
        "shift": 10,
        "opernum": 100,
        "summ_total": summ_total,
        "summ_used": summ_total - rest,
        "dt_end": None,
        "state": state,
        "rest": rest,
    }
    coupon.update(extra)
    return coupon


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def storage() -> MemoryStorage:
    """Хранилище настроек в памяти"""
    return MemoryStorage()


@pytest.fixture
def business_service() -> CouponsBusinessService:
    """Сервис купонов с фиксированными часами и порогами по умолчанию"""
    return CouponsBusinessService(clock=lambda: FIXED_NOW)


@pytest.fixture
def coupons_api_response() -> List[Dict[str, Any]]:
    """Ответ API купонов: две станции системы 15"""
    return [
        {
            "system": 15,
            "number": 4,
            "coupons": [
                make_coupon("C-OLD", days_ago=8, rest=500),
                make_coupon("C-CRIT", days_ago=40, rest=200),
                make_coupon("C-DONE", days_ago=2, rest=0, state="Погашен", summ_total=300),
            ],
        },
        {
            "system": 15,
            "number": 7,
            "coupons": [
                make_coupon("C-NEW", days_ago=0.1, rest=50),
                make_coupon("C-BIG", days_ago=3, rest=1500),
            ],
        },
    ]


class FakeTradingApi:
    """
    Обработчик httpx.MockTransport, имитирующий API торговой сети
    """

    def __init__(self, coupons: Any = None):
        self.coupons = coupons if coupons is not None else []
        self.requests: List[httpx.Request] = []
        self.logins = 0
        self.valid_tokens = set()
        # Ответы по пути, переопределяемые в тестах
        self.responses: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/tms", "", 1)

        if path == "/v1/login":
            self.logins += 1
            token = f"token-{self.logins}"
            self.valid_tokens.add(token)
            return httpx.Response(200, text=json.dumps(token))

        auth = request.headers.get("Authorization", "")
        if auth.replace("Bearer ", "") not in self.valid_tokens:
            return httpx.Response(401, text="Unauthorized")

        if path in self.responses:
            return self.responses[path](request)

        if path == "/v1/coupons":
            return httpx.Response(200, json=self.coupons)
        if path == "/v1/services":
            return httpx.Response(200, json=[{"service_code": 2, "service_name": "АИ-92"}])
        if path.startswith("/v1/pos/prices/"):
            return httpx.Response(200, json={"prices": [{"service_code": 2, "service_name": "АИ-92", "price": 58.2}]})
        if path == "/v1/info":
            return httpx.Response(200, json={"system": request.url.params.get("system")})

        return httpx.Response(404, text="Not found")

    def paths(self) -> List[str]:
        return [r.url.path.replace("/tms", "", 1) for r in self.requests]


@pytest.fixture
def fake_trading_api(coupons_api_response) -> FakeTradingApi:
    return FakeTradingApi(coupons_api_response)


@pytest.fixture
def trading_client(storage: MemoryStorage, fake_trading_api: FakeTradingApi) -> TradingNetworkClient:
    """Клиент API торговой сети поверх MockTransport"""
    return TradingNetworkClient(
        storage,
        default_url=TRADING_API_URL,
        username="UserApi",
        password="secret",
        transport=httpx.MockTransport(fake_trading_api),
        time_func=lambda: FIXED_NOW.timestamp()
    )


@pytest.fixture
def coupons_service(trading_client, business_service) -> CouponsApiService:
    return CouponsApiService(trading_client, business_service)


@pytest.fixture
def template_repository(storage: MemoryStorage) -> CommandTemplateRepository:
    return CommandTemplateRepository(storage, clock=lambda: FIXED_NOW)


@pytest.fixture
def database_client(storage: MemoryStorage) -> EnhancedDatabaseClient:
    """Клиент БД без настроек подключения (не инициализирован)"""
    return EnhancedDatabaseClient(storage)


@pytest.fixture
def client(
    database_client,
    trading_client,
    business_service,
    coupons_service,
    template_repository
) -> Generator[TestClient, None, None]:
    """Создание тестового клиента FastAPI с подмененными сервисами"""
    app.dependency_overrides[get_database_client] = lambda: database_client
    app.dependency_overrides[get_trading_client] = lambda: trading_client
    app.dependency_overrides[get_coupons_business_service] = lambda: business_service
    app.dependency_overrides[get_coupons_service] = lambda: coupons_service
    app.dependency_overrides[get_template_repository] = lambda: template_repository

    client = TestClient(app, raise_server_exceptions=False)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture
def coupon_factory() -> Callable[..., Dict[str, Any]]:
    """Фабрика купонов в формате API"""
    return make_coupon
