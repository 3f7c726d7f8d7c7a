"""
Бизнес-логика для работы с купонами

Расчет возраста и приоритета, группировка по станциям, фильтрация,
статистика, алерты и экспорт в CSV. Сервис не выполняет ввода-вывода:
все методы синхронные и детерминированные при заданных часах (clock).
"""
import csv
import io
import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from tradeframe.logger import logger
from tradeframe.schemas import (
    COUPON_STATE_ACTIVE,
    COUPON_STATE_REDEEMED,
    AgeFilter,
    AlertSeverity,
    AlertType,
    Coupon,
    CouponPriority,
    CouponSystemResponse,
    CouponsAlert,
    CouponsFilter,
    CouponsMonitoringSettings,
    CouponsMonitoringSettingsUpdate,
    CouponsSearchResult,
    CouponsStationGroup,
    CouponsStats,
    CouponWithAge,
)
from tradeframe.utils.date_utils import local_now, parse_iso_datetime, start_of_day


CSV_HEADERS = [
    "Номер купона",
    "Дата выдачи",
    "POS",
    "Смена",
    "Операция",
    "Сумма общая",
    "Использовано",
    "Остаток",
    "Статус",
    "Возраст (дни)",
    "Приоритет",
]

# Начало периода фильтра по возрасту: дней назад от локальной полуночи
_AGE_FILTER_DAYS = {
    AgeFilter.TODAY: 0,
    AgeFilter.WEEK: 7,
    AgeFilter.MONTH: 30,
}


def format_number(value: Union[int, float]) -> str:
    """
    Число без лишнего ".0": 500.0 -> "500", 500.5 -> "500.5"
    """
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class CouponsBusinessService:
    """
    Расчеты по купонам с учетом порогов мониторинга
    """

    def __init__(
        self,
        settings: Optional[CouponsMonitoringSettings] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            settings: Пороги мониторинга (по умолчанию 7 / 30 дней, 1000 руб.)
            clock: Функция текущего времени с часовым поясом (для тестов)
        """
        self._settings = settings.model_copy() if settings else CouponsMonitoringSettings()
        self._clock = clock or local_now

    # ------------------------------------------------------------------
    # Обогащение и группировка
    # ------------------------------------------------------------------

    def enrich_coupon_with_age(self, coupon: Coupon, now: Optional[datetime] = None) -> CouponWithAge:
        """
        Обогащение купона возрастом и приоритетом

        Args:
            coupon: Купон из API
            now: Момент расчета (по умолчанию текущее время)

        Returns:
            Купон с полями ageInDays, ageInHours, isOld, isCritical, priority
        """
        now = now or self._clock()
        issued_at = parse_iso_datetime(coupon.dt_beg)

        if issued_at is None:
            logger.warning(f"Не удалось разобрать дату выдачи купона {coupon.number}: {coupon.dt_beg!r}", extra={
                "coupon_number": coupon.number
            })
            age_in_hours = 0
        else:
            age_in_hours = math.floor((now - issued_at).total_seconds() / 3600)
        age_in_days = math.floor(age_in_hours / 24)

        settings = self._settings
        is_old = age_in_days > settings.old_coupon_threshold_days
        is_critical = age_in_days > settings.critical_coupon_threshold_days

        if is_critical or coupon.rest > settings.large_amount_threshold:
            priority = CouponPriority.CRITICAL
        elif is_old or coupon.rest > settings.large_amount_threshold / 2:
            priority = CouponPriority.ATTENTION
        else:
            priority = CouponPriority.NORMAL

        return CouponWithAge(
            **coupon.model_dump(include=set(Coupon.model_fields)),
            age_in_days=age_in_days,
            age_in_hours=age_in_hours,
            is_old=is_old,
            is_critical=is_critical,
            priority=priority
        )

    def group_coupons_by_station(
        self,
        api_response: Iterable[Union[CouponSystemResponse, Dict[str, Any]]]
    ) -> List[CouponsStationGroup]:
        """
        Группировка купонов по станциям (system, number) с агрегатами
        """
        now = self._clock()
        groups = []

        for system_data in api_response:
            if isinstance(system_data, dict):
                system_data = CouponSystemResponse.model_validate(system_data)

            enriched = [self.enrich_coupon_with_age(c, now) for c in system_data.coupons]
            group = CouponsStationGroup(
                system_id=system_data.system,
                station_id=system_data.number,
                # TODO: брать название из справочника торговых точек
                station_name=f"Станция {system_data.number}",
                coupons=enriched
            )
            groups.append(self._recalculate_group(group, enriched))

        return groups

    @staticmethod
    def _recalculate_group(group: CouponsStationGroup, coupons: List[CouponWithAge]) -> CouponsStationGroup:
        active = [c for c in coupons if c.state == COUPON_STATE_ACTIVE]
        return group.model_copy(update={
            "coupons": coupons,
            "total_debt": sum(c.rest for c in active),
            "active_coupons_count": len(active),
            "total_coupons_count": len(coupons),
            "old_coupons_count": sum(1 for c in coupons if c.is_old),
            "critical_coupons_count": sum(1 for c in coupons if c.is_critical),
        })

    # ------------------------------------------------------------------
    # Фильтрация и поиск
    # ------------------------------------------------------------------

    def apply_filters(self, groups: List[CouponsStationGroup], filters: CouponsFilter) -> List[CouponsStationGroup]:
        """
        Применение фильтров к купонам групп

        Агрегаты групп пересчитываются, группы без купонов удаляются.
        Купоны с неразборчивой датой выдачи не проходят фильтры по дате.
        Неразборчивая граница периода не пропускает ни один купон.
        """
        date_from = parse_iso_datetime(filters.date_from) if filters.date_from else None
        date_to = parse_iso_datetime(filters.date_to) if filters.date_to else None
        search = filters.search.lower() if filters.search else None

        age_since = None
        if filters.age_filter in _AGE_FILTER_DAYS:
            age_since = start_of_day(self._clock(), _AGE_FILTER_DAYS[filters.age_filter])

        def matches(coupon: CouponWithAge) -> bool:
            if filters.state and coupon.state != filters.state:
                return False

            if search and search not in coupon.number.lower():
                return False

            if filters.min_amount is not None and coupon.rest < filters.min_amount:
                return False

            if filters.max_amount is not None and coupon.rest > filters.max_amount:
                return False

            if filters.age_filter == AgeFilter.OLD and not coupon.is_old:
                return False

            if filters.date_from or filters.date_to or age_since is not None:
                issued_at = parse_iso_datetime(coupon.dt_beg)
                if issued_at is None:
                    return False
                if filters.date_from and (date_from is None or issued_at < date_from):
                    return False
                if filters.date_to and (date_to is None or issued_at > date_to):
                    return False
                if age_since is not None and issued_at < age_since:
                    return False

            return True

        result = []
        for group in groups:
            coupons = [c for c in group.coupons if matches(c)]
            if coupons:
                result.append(self._recalculate_group(group, coupons))
        return result

    def calculate_stats(self, groups: List[CouponsStationGroup]) -> CouponsStats:
        """
        Общая статистика по купонам всех групп
        """
        coupons = [c for group in groups for c in group.coupons]
        active = [c for c in coupons if c.state == COUPON_STATE_ACTIVE]
        total_debt = sum(c.rest for c in active)

        return CouponsStats(
            total_coupons=len(coupons),
            active_coupons=len(active),
            redeemed_coupons=sum(1 for c in coupons if c.state == COUPON_STATE_REDEEMED),
            total_debt=total_debt,
            total_amount=sum(c.summ_total for c in coupons),
            used_amount=sum(c.summ_used for c in coupons),
            average_rest=total_debt / len(active) if active else 0,
            old_coupons_count=sum(1 for c in coupons if c.is_old),
            critical_coupons_count=sum(1 for c in coupons if c.is_critical)
        )

    def search_coupons(
        self,
        api_response: Iterable[Union[CouponSystemResponse, Dict[str, Any]]],
        filters: CouponsFilter
    ) -> CouponsSearchResult:
        """
        Поиск: группировка -> фильтры -> статистика
        """
        groups = self.apply_filters(self.group_coupons_by_station(api_response), filters)

        return CouponsSearchResult(
            groups=groups,
            stats=self.calculate_stats(groups),
            total_found=sum(len(group.coupons) for group in groups),
            applied_filters=filters
        )

    # ------------------------------------------------------------------
    # Анализ
    # ------------------------------------------------------------------

    def generate_alerts(self, groups: List[CouponsStationGroup]) -> List[CouponsAlert]:
        """
        Алерты о проблемных активных купонах

        Три независимых условия: старые (но не критические), критические,
        крупный остаток. Сортировка: сначала error, затем по убыванию количества.
        """
        settings = self._settings
        active = [c for group in groups for c in group.coupons if c.state == COUPON_STATE_ACTIVE]
        alerts = []

        old = [c for c in active if c.is_old and not c.is_critical]
        if old:
            alerts.append(self._build_alert(
                AlertType.OLD,
                AlertSeverity.WARNING,
                "Старые купоны",
                f"Обнаружено {len(old)} купонов старше {settings.old_coupon_threshold_days} дней",
                old
            ))

        critical = [c for c in active if c.is_critical]
        if critical:
            alerts.append(self._build_alert(
                AlertType.CRITICAL,
                AlertSeverity.ERROR,
                "Критические купоны",
                f"Обнаружено {len(critical)} купонов старше {settings.critical_coupon_threshold_days} дней",
                critical
            ))

        large = [c for c in active if c.rest > settings.large_amount_threshold]
        if large:
            alerts.append(self._build_alert(
                AlertType.LARGE_AMOUNT,
                AlertSeverity.WARNING,
                "Крупные суммы",
                f"Обнаружено {len(large)} купонов с остатком свыше "
                f"{format_number(settings.large_amount_threshold)} руб.",
                large
            ))

        alerts.sort(key=lambda a: (a.severity != AlertSeverity.ERROR, -a.count))
        return alerts

    @staticmethod
    def _build_alert(
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        description: str,
        coupons: List[CouponWithAge]
    ) -> CouponsAlert:
        return CouponsAlert(
            type=alert_type,
            severity=severity,
            title=title,
            description=description,
            count=len(coupons),
            total_amount=sum(c.rest for c in coupons),
            coupons=coupons
        )

    @staticmethod
    def find_coupon_in_groups(groups: List[CouponsStationGroup], coupon_number: str) -> Optional[CouponWithAge]:
        """Поиск купона по точному номеру во всех группах"""
        for group in groups:
            for coupon in group.coupons:
                if coupon.number == coupon_number:
                    return coupon
        return None

    @staticmethod
    def get_top_stations_by_debt(groups: List[CouponsStationGroup], limit: int = 5) -> List[CouponsStationGroup]:
        return sorted(groups, key=lambda g: g.total_debt, reverse=True)[:limit]

    @staticmethod
    def get_top_coupons_by_rest(groups: List[CouponsStationGroup], limit: int = 10) -> List[CouponWithAge]:
        active = [c for group in groups for c in group.coupons if c.state == COUPON_STATE_ACTIVE]
        return sorted(active, key=lambda c: c.rest, reverse=True)[:limit]

    # ------------------------------------------------------------------
    # Настройки мониторинга
    # ------------------------------------------------------------------

    def update_monitoring_settings(
        self,
        update: Union[CouponsMonitoringSettingsUpdate, Dict[str, Any]]
    ) -> CouponsMonitoringSettings:
        """
        Частичное обновление порогов мониторинга

        Returns:
            Новые настройки

        Raises:
            ValidationError: итоговые пороги противоречат друг другу
        """
        if isinstance(update, dict):
            update = CouponsMonitoringSettingsUpdate.model_validate(update)

        changes = update.model_dump(exclude_none=True)
        merged = {**self._settings.model_dump(), **changes}
        self._settings = CouponsMonitoringSettings.model_validate(merged)

        logger.info("Обновлены настройки мониторинга купонов", extra={"changes": changes})
        return self.get_monitoring_settings()

    def get_monitoring_settings(self) -> CouponsMonitoringSettings:
        return self._settings.model_copy()

    # ------------------------------------------------------------------
    # Экспорт
    # ------------------------------------------------------------------

    @staticmethod
    def export_to_csv(coupons: List[CouponWithAge]) -> str:
        """
        Экспорт купонов в CSV

        Все поля в кавычках, кавычки внутри значений удваиваются.
        Строки разделяются "\\n", завершающего перевода строки нет.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)

        for coupon in coupons:
            writer.writerow([
                coupon.number,
                coupon.dt_beg,
                format_number(coupon.pos),
                format_number(coupon.shift),
                format_number(coupon.opernum),
                format_number(coupon.summ_total),
                format_number(coupon.summ_used),
                format_number(coupon.rest),
                coupon.state,
                format_number(coupon.age_in_days),
                coupon.priority.value,
            ])

        return buffer.getvalue().rstrip("\n")
