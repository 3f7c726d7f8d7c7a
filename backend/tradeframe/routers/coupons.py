"""
Роутер для работы с купонами (сдача топливом)
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import ValidationError

from tradeframe.config import get_settings
from tradeframe.dependencies import get_coupons_business_service, get_coupons_service
from tradeframe.logger import logger
from tradeframe.schemas import (
    AgeFilter,
    ApiTestResult,
    CouponsAlert,
    CouponsFilter,
    CouponsMonitoringSettings,
    CouponsMonitoringSettingsUpdate,
    CouponsSearchResult,
    CouponsStationGroup,
    CouponsStats,
    CouponWithAge,
)
from tradeframe.services.coupons_business_service import CouponsBusinessService
from tradeframe.services.coupons_service import CouponsApiService

router = APIRouter(prefix="/api/v1/coupons", tags=["Coupons"])
settings = get_settings()


def get_coupons_filter(
    station: Optional[int] = Query(None, description="Номер станции"),
    state: Optional[str] = Query(None, description="Статус купона: Активен, Погашен"),
    date_from: Optional[str] = Query(None, description="Дата выдачи с (ISO 8601)"),
    date_to: Optional[str] = Query(None, description="Дата выдачи по (ISO 8601)"),
    search: Optional[str] = Query(None, description="Поиск по номеру купона"),
    min_amount: Optional[float] = Query(None, ge=0, description="Минимальный остаток"),
    max_amount: Optional[float] = Query(None, ge=0, description="Максимальный остаток"),
    age_filter: Optional[AgeFilter] = Query(None, description="Возраст: all, today, week, month, old")
) -> CouponsFilter:
    return CouponsFilter(
        station=station,
        state=state,
        date_from=date_from,
        date_to=date_to,
        search=search,
        min_amount=min_amount,
        max_amount=max_amount,
        age_filter=age_filter
    )


async def _filtered_groups(
    system: int,
    filters: CouponsFilter,
    coupons_service: CouponsApiService
) -> List[CouponsStationGroup]:
    return (await coupons_service.search(system, filters)).groups


@router.get("/search", response_model=CouponsSearchResult)
async def search_coupons(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    filters: CouponsFilter = Depends(get_coupons_filter),
    coupons_service: CouponsApiService = Depends(get_coupons_service)
):
    """
    Поиск купонов с фильтрами

    Купоны группируются по станциям, агрегаты групп пересчитываются
    после фильтрации, пустые группы не возвращаются.
    """
    filters.system = system
    result = await coupons_service.search(system, filters)

    logger.debug("Поиск купонов выполнен", extra={"system": system, "total_found": result.total_found})

    return result


@router.get("/stats", response_model=CouponsStats)
async def get_coupons_stats(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    filters: CouponsFilter = Depends(get_coupons_filter),
    coupons_service: CouponsApiService = Depends(get_coupons_service)
):
    """
    Общая статистика по купонам
    """
    return (await coupons_service.search(system, filters)).stats


@router.get("/alerts", response_model=List[CouponsAlert])
async def get_coupons_alerts(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    station: Optional[int] = Query(None, description="Номер станции"),
    coupons_service: CouponsApiService = Depends(get_coupons_service),
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Алерты о старых, критических и крупных активных купонах
    """
    groups = await coupons_service.get_station_groups(system, station)
    return business_service.generate_alerts(groups)


@router.get("/top-stations", response_model=List[CouponsStationGroup])
async def get_top_stations(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    limit: int = Query(5, ge=1, le=100),
    coupons_service: CouponsApiService = Depends(get_coupons_service),
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Станции с наибольшей задолженностью по активным купонам
    """
    groups = await coupons_service.get_station_groups(system)
    return business_service.get_top_stations_by_debt(groups, limit)


@router.get("/top-coupons", response_model=List[CouponWithAge])
async def get_top_coupons(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    station: Optional[int] = Query(None, description="Номер станции"),
    limit: int = Query(10, ge=1, le=1000),
    coupons_service: CouponsApiService = Depends(get_coupons_service),
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Активные купоны с наибольшим остатком
    """
    groups = await coupons_service.get_station_groups(system, station)
    return business_service.get_top_coupons_by_rest(groups, limit)


@router.get("/export")
async def export_coupons(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    filters: CouponsFilter = Depends(get_coupons_filter),
    coupons_service: CouponsApiService = Depends(get_coupons_service),
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Экспорт найденных купонов в CSV
    """
    groups = await _filtered_groups(system, filters, coupons_service)
    coupons = [coupon for group in groups for coupon in group.coupons]
    content = business_service.export_to_csv(coupons)

    filename = f"coupons_{system}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    logger.info("Экспорт купонов в CSV", extra={"system": system, "coupons_count": len(coupons)})

    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.get("/find/{number}", response_model=CouponWithAge)
async def find_coupon(
    number: str,
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    coupons_service: CouponsApiService = Depends(get_coupons_service),
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Поиск купона по точному номеру
    """
    groups = await coupons_service.get_station_groups(system)
    coupon = business_service.find_coupon_in_groups(groups, number)
    if coupon is None:
        raise HTTPException(status_code=404, detail=f"Купон {number} не найден")
    return coupon


@router.get("/test", response_model=ApiTestResult)
async def test_coupons_api(
    system: int = Query(settings.trading_default_system, ge=1, description="Идентификатор системы"),
    coupons_service: CouponsApiService = Depends(get_coupons_service)
):
    """
    Проверка подключения к API купонов
    """
    return await coupons_service.test_api_connection(system)


@router.get("/settings", response_model=CouponsMonitoringSettings)
async def get_monitoring_settings(
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Текущие пороги мониторинга купонов
    """
    return business_service.get_monitoring_settings()


@router.put("/settings", response_model=CouponsMonitoringSettings)
async def update_monitoring_settings(
    update: CouponsMonitoringSettingsUpdate,
    business_service: CouponsBusinessService = Depends(get_coupons_business_service)
):
    """
    Частичное обновление порогов мониторинга
    """
    try:
        return business_service.update_monitoring_settings(update)
    except ValidationError as e:
        message = e.errors()[0]["msg"]
        logger.warning(f"Отклонено обновление настроек мониторинга: {message}")
        raise HTTPException(status_code=422, detail=message)
