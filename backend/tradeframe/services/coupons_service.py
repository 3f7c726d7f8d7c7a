"""
Сервис купонов: загрузка из API торговой сети и поиск
"""
import time
from typing import Any, List, Optional

from pydantic import ValidationError

from tradeframe.errors import TradingApiError
from tradeframe.logger import logger
from tradeframe.schemas import (
    ApiTestResult,
    Coupon,
    CouponSystemResponse,
    CouponsFilter,
    CouponsSearchResult,
    CouponsStationGroup,
)
from tradeframe.services.coupons_business_service import CouponsBusinessService
from tradeframe.services.trading_network_client import TradingNetworkClient


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class CouponsApiService:
    """
    Получение купонов через /v1/coupons и передача в бизнес-логику
    """

    def __init__(self, client: TradingNetworkClient, business_service: CouponsBusinessService):
        self.client = client
        self.business_service = business_service

    async def get_coupons(
        self,
        system: int,
        station: Optional[int] = None,
        dt_beg: Optional[str] = None,
        dt_end: Optional[str] = None
    ) -> List[CouponSystemResponse]:
        """
        Список систем/станций с купонами

        Args:
            system: Идентификатор системы (обязательный)
            station: Номер станции
            dt_beg: Начало периода
            dt_end: Конец периода

        Raises:
            ValueError: не указан system
            TradingApiError: ошибка API или неверная структура ответа
        """
        if not system:
            raise ValueError("Параметр system является обязательным")

        data = await self.client.get_coupons(system, station=station, dt_beg=dt_beg, dt_end=dt_end)

        if not isinstance(data, list):
            raise TradingApiError("Неверная структура ответа API: ожидался массив")

        for index, system_data in enumerate(data):
            if not isinstance(system_data, dict) \
                    or not _is_int(system_data.get("system")) or not _is_int(system_data.get("number")):
                raise TradingApiError(f"Неверная структура элемента {index}: отсутствуют system или number")
            if not isinstance(system_data.get("coupons"), list):
                raise TradingApiError(f"Неверная структура элемента {index}: coupons должен быть массивом")

        try:
            result = [CouponSystemResponse.model_validate(item) for item in data]
        except ValidationError as e:
            raise TradingApiError(f"Неверная структура купонов в ответе API: {e}") from e

        logger.info("Получены купоны из API торговой сети", extra={
            "system": system,
            "station": station,
            "systems_count": len(result),
            "coupons_count": sum(len(item.coupons) for item in result)
        })
        return result

    async def find_coupon_by_number(self, coupon_number: str, system: int) -> Optional[Coupon]:
        """Поиск купона по номеру во всех станциях системы"""
        for system_data in await self.get_coupons(system):
            for coupon in system_data.coupons:
                if coupon.number == coupon_number:
                    return coupon
        return None

    async def get_coupons_by_station(
        self,
        system: int,
        station: int,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None
    ) -> List[Coupon]:
        """Купоны станции за период (все найденные станции объединяются)"""
        data = await self.get_coupons(system, station=station, dt_beg=date_from, dt_end=date_to)
        return [coupon for system_data in data for coupon in system_data.coupons]

    async def get_station_groups(self, system: int, station: Optional[int] = None) -> List[CouponsStationGroup]:
        """Купоны, сгруппированные по станциям, с расчетными полями"""
        data = await self.get_coupons(system, station=station)
        return self.business_service.group_coupons_by_station(data)

    async def search(self, system: int, filters: CouponsFilter) -> CouponsSearchResult:
        """
        Поиск купонов: загрузка из API, группировка, фильтры, статистика
        """
        data = await self.get_coupons(system, station=filters.station)
        return self.business_service.search_coupons(data, filters)

    async def test_api_connection(self, system: int = 15) -> ApiTestResult:
        """
        Проверка API купонов тестовым запросом
        """
        start_time = time.monotonic()
        try:
            data = await self.get_coupons(system)
        except (TradingApiError, ValueError) as e:
            logger.error(f"Ошибка тестирования API купонов: {e}", extra={"system": system})
            return ApiTestResult(
                success=False,
                message="Ошибка подключения к API",
                error=str(e) or "Неизвестная ошибка"
            )

        response_time = int((time.monotonic() - start_time) * 1000)
        total_coupons = sum(len(item.coupons) for item in data)

        return ApiTestResult(
            success=True,
            message=f"API работает. Получено {total_coupons} купонов за {response_time}мс",
            data={
                "systems": len(data),
                "totalCoupons": total_coupons,
                "responseTime": response_time,
                "sample": data[0].model_dump() if data else None,
            }
        )
