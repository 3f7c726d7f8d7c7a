"""
Зависимости FastAPI: сервисы, созданные при запуске приложения

Сервисы создаются один раз в lifespan и хранятся в app.state.
В тестах зависимости подменяются через app.dependency_overrides.
"""
from fastapi import Request

from tradeframe.services.command_templates import CommandTemplateRepository
from tradeframe.services.coupons_business_service import CouponsBusinessService
from tradeframe.services.coupons_service import CouponsApiService
from tradeframe.services.database_client import EnhancedDatabaseClient
from tradeframe.services.trading_network_client import TradingNetworkClient


def get_database_client(request: Request) -> EnhancedDatabaseClient:
    return request.app.state.database_client


def get_trading_client(request: Request) -> TradingNetworkClient:
    return request.app.state.trading_client


def get_coupons_business_service(request: Request) -> CouponsBusinessService:
    return request.app.state.coupons_business_service


def get_coupons_service(request: Request) -> CouponsApiService:
    return request.app.state.coupons_service


def get_template_repository(request: Request) -> CommandTemplateRepository:
    return request.app.state.template_repository
