"""
Роутер API торговой сети: справочник услуг, цены, информация о станции
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from tradeframe.config import get_settings
from tradeframe.dependencies import get_trading_client
from tradeframe.services.trading_network_client import TradingNetworkClient

router = APIRouter(prefix="/api/v1/trading-network", tags=["Trading Network"])
settings = get_settings()


@router.get("/services")
async def get_services(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    client: TradingNetworkClient = Depends(get_trading_client)
) -> Any:
    """
    Справочник услуг (видов топлива) системы
    """
    return await client.get_services(system)


@router.get("/prices/{station}")
async def get_prices(
    station: int,
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    date: Optional[str] = Query(None, description="Дата цен в ISO 8601 (по умолчанию текущая)"),
    client: TradingNetworkClient = Depends(get_trading_client)
) -> Any:
    """
    Текущие цены на топливо на станции
    """
    return await client.get_prices(station, system, date)


@router.get("/info")
async def get_info(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    station: Optional[int] = Query(None, description="Номер станции"),
    client: TradingNetworkClient = Depends(get_trading_client)
) -> Any:
    """
    Информация о системе / станции
    """
    return await client.get_info(system, station)
