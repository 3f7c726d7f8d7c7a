"""
Тесты бизнес-логики купонов
"""
import csv
import io

import pytest
from pydantic import ValidationError

from tradeframe.schemas import (
    AgeFilter,
    AlertSeverity,
    AlertType,
    Coupon,
    CouponPriority,
    CouponsFilter,
    CouponsMonitoringSettings,
)
from tradeframe.services.coupons_business_service import (
    CSV_HEADERS,
    CouponsBusinessService,
    format_number,
)


def numbers(groups):
    return sorted(c.number for group in groups for c in group.coupons)


class TestEnrichCouponWithAge:
    """Тесты расчета возраста и приоритета купона"""

    def test_old_coupon_gets_attention(self, business_service, coupon_factory):
        """Купон 10 дней с остатком 100: старый, но не критический"""
        coupon = Coupon(**coupon_factory("C1", days_ago=10, rest=100))

        enriched = business_service.enrich_coupon_with_age(coupon)

        assert enriched.age_in_days == 10
        assert enriched.age_in_hours == 240
        assert enriched.is_old is True
        assert enriched.is_critical is False
        assert enriched.priority == CouponPriority.ATTENTION

    def test_threshold_is_exclusive(self, business_service, coupon_factory):
        """Ровно 7 дней - еще не старый"""
        enriched = business_service.enrich_coupon_with_age(Coupon(**coupon_factory(days_ago=7, rest=10)))

        assert enriched.age_in_days == 7
        assert enriched.is_old is False
        assert enriched.priority == CouponPriority.NORMAL

    def test_critical_by_age(self, business_service, coupon_factory):
        enriched = business_service.enrich_coupon_with_age(Coupon(**coupon_factory(days_ago=31, rest=10)))

        assert enriched.is_old is True
        assert enriched.is_critical is True
        assert enriched.priority == CouponPriority.CRITICAL

    @pytest.mark.parametrize("rest,priority", [
        (1000, CouponPriority.ATTENTION),
        (1000.01, CouponPriority.CRITICAL),
        (500, CouponPriority.NORMAL),
        (501, CouponPriority.ATTENTION),
    ])
    def test_priority_by_amount(self, business_service, coupon_factory, rest, priority):
        enriched = business_service.enrich_coupon_with_age(Coupon(**coupon_factory(days_ago=1, rest=rest)))
        assert enriched.priority == priority

    def test_partial_hours_are_floored(self, business_service, coupon_factory):
        enriched = business_service.enrich_coupon_with_age(Coupon(**coupon_factory(days_ago=0.99, rest=10)))

        assert enriched.age_in_hours == 23
        assert enriched.age_in_days == 0

    def test_unparseable_date_means_zero_age(self, business_service, coupon_factory):
        coupon = Coupon(**coupon_factory(dt_beg="вчера", rest=10))

        enriched = business_service.enrich_coupon_with_age(coupon)

        assert enriched.age_in_days == 0
        assert enriched.age_in_hours == 0
        assert enriched.priority == CouponPriority.NORMAL

    def test_source_fields_preserved(self, business_service, coupon_factory):
        coupon = Coupon(**coupon_factory("C9", rest=40, summ_total=100, fuel_type="АИ-95"))

        enriched = business_service.enrich_coupon_with_age(coupon)

        assert enriched.number == "C9"
        assert enriched.summ_used == 60
        assert enriched.fuel_type == "АИ-95"

    def test_serialized_with_camel_case_aliases(self, business_service, coupon_factory):
        enriched = business_service.enrich_coupon_with_age(Coupon(**coupon_factory()))
        data = enriched.model_dump(by_alias=True)

        assert {"ageInDays", "ageInHours", "isOld", "isCritical", "priority"} <= set(data)


class TestGrouping:
    """Тесты группировки по станциям и статистики"""

    def test_group_aggregates(self, business_service, coupons_api_response):
        groups = business_service.group_coupons_by_station(coupons_api_response)

        assert [(g.system_id, g.station_id) for g in groups] == [(15, 4), (15, 7)]
        first, second = groups
        assert first.station_name == "Станция 4"
        assert first.total_debt == 700
        assert first.active_coupons_count == 2
        assert first.total_coupons_count == 3
        assert first.old_coupons_count == 2
        assert first.critical_coupons_count == 1
        assert second.total_debt == 1550

    def test_single_old_coupon_scenario(self, business_service, coupon_factory):
        """Одна станция, один купон 8 дней с остатком 500"""
        response = [{"system": 15, "number": 4, "coupons": [coupon_factory("C1", days_ago=8, rest=500)]}]

        groups = business_service.group_coupons_by_station(response)
        stats = business_service.calculate_stats(groups)

        assert groups[0].total_debt == 500
        assert groups[0].old_coupons_count == 1
        assert groups[0].critical_coupons_count == 0
        assert groups[0].coupons[0].priority == CouponPriority.ATTENTION
        assert stats.total_debt == 500
        assert stats.active_coupons == 1

    def test_empty_station(self, business_service):
        groups = business_service.group_coupons_by_station([{"system": 15, "number": 9, "coupons": []}])

        assert groups[0].total_debt == 0
        assert groups[0].total_coupons_count == 0

    def test_stats(self, business_service, coupons_api_response):
        stats = business_service.calculate_stats(business_service.group_coupons_by_station(coupons_api_response))

        assert stats.total_coupons == 5
        assert stats.active_coupons == 4
        assert stats.redeemed_coupons == 1
        assert stats.total_debt == 2250
        assert stats.total_amount == 2550
        assert stats.used_amount == 300
        assert stats.average_rest == 562.5
        assert stats.old_coupons_count == 2
        assert stats.critical_coupons_count == 1

    def test_stats_without_active_coupons(self, business_service):
        stats = business_service.calculate_stats([])

        assert stats.total_coupons == 0
        assert stats.average_rest == 0


class TestFilters:
    """Тесты фильтрации купонов"""

    @pytest.fixture
    def groups(self, business_service, coupons_api_response):
        return business_service.group_coupons_by_station(coupons_api_response)

    def test_empty_filter_keeps_everything(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter())
        assert numbers(result) == numbers(groups)

    def test_state(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter(state="Погашен"))

        assert numbers(result) == ["C-DONE"]
        assert [g.station_id for g in result] == [4]
        assert result[0].total_debt == 0
        assert result[0].total_coupons_count == 1

    def test_search_is_case_insensitive(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter(search="crit"))
        assert numbers(result) == ["C-CRIT"]

    def test_amount_range(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter(min_amount=200, max_amount=500))
        assert numbers(result) == ["C-CRIT", "C-OLD"]

    def test_age_old_drops_empty_groups(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter(age_filter=AgeFilter.OLD))

        assert [g.station_id for g in result] == [4]
        assert numbers(result) == ["C-CRIT", "C-OLD"]

    @pytest.mark.parametrize("age_filter,expected", [
        (AgeFilter.TODAY, ["C-NEW"]),
        (AgeFilter.WEEK, ["C-BIG", "C-DONE", "C-NEW"]),
        (AgeFilter.MONTH, ["C-BIG", "C-DONE", "C-NEW", "C-OLD"]),
        (AgeFilter.ALL, ["C-BIG", "C-CRIT", "C-DONE", "C-NEW", "C-OLD"]),
    ])
    def test_age_periods(self, business_service, groups, age_filter, expected):
        result = business_service.apply_filters(groups, CouponsFilter(age_filter=age_filter))
        assert numbers(result) == expected

    def test_date_range(self, business_service, groups):
        result = business_service.apply_filters(groups, CouponsFilter(
            date_from="2024-06-10T00:00:00Z",
            date_to="2024-06-14T00:00:00Z"
        ))
        assert numbers(result) == ["C-BIG", "C-DONE"]

    def test_invalid_filter_date_matches_nothing(self, business_service, groups):
        assert business_service.apply_filters(groups, CouponsFilter(date_from="not-a-date")) == []

    def test_coupon_with_invalid_date_fails_date_filter(self, business_service, coupon_factory):
        groups = business_service.group_coupons_by_station([{
            "system": 15,
            "number": 4,
            "coupons": [coupon_factory("BAD", dt_beg="???"), coupon_factory("GOOD", days_ago=1)],
        }])

        assert numbers(business_service.apply_filters(groups, CouponsFilter())) == ["BAD", "GOOD"]
        assert numbers(business_service.apply_filters(groups, CouponsFilter(age_filter=AgeFilter.WEEK))) == ["GOOD"]

    def test_filters_do_not_mutate_groups(self, business_service, groups):
        business_service.apply_filters(groups, CouponsFilter(state="Погашен"))
        assert groups[0].total_coupons_count == 3

    def test_search_coupons(self, business_service, coupons_api_response):
        filters = CouponsFilter(min_amount=300)

        result = business_service.search_coupons(coupons_api_response, filters)

        assert result.total_found == 2
        assert result.stats.total_debt == 2000
        assert [g.station_id for g in result.groups] == [4, 7]
        assert result.applied_filters == filters


class TestAlerts:
    """Тесты алертов"""

    def test_alerts_order_and_content(self, business_service, coupons_api_response):
        alerts = business_service.generate_alerts(business_service.group_coupons_by_station(coupons_api_response))

        assert [a.type for a in alerts] == [AlertType.CRITICAL, AlertType.OLD, AlertType.LARGE_AMOUNT]
        critical, old, large = alerts
        assert critical.severity == AlertSeverity.ERROR
        assert critical.title == "Критические купоны"
        assert critical.description == "Обнаружено 1 купонов старше 30 дней"
        assert critical.total_amount == 200
        assert [c.number for c in old.coupons] == ["C-OLD"]
        assert large.description == "Обнаружено 1 купонов с остатком свыше 1000 руб."
        assert large.total_amount == 1500

    def test_warning_sorted_by_count(self, business_service, coupon_factory):
        response = [{"system": 15, "number": 1, "coupons": [
            coupon_factory("O1", days_ago=10, rest=10),
            coupon_factory("L1", days_ago=1, rest=2000),
            coupon_factory("L2", days_ago=1, rest=3000),
        ]}]

        alerts = business_service.generate_alerts(business_service.group_coupons_by_station(response))

        assert [(a.type, a.count) for a in alerts] == [(AlertType.LARGE_AMOUNT, 2), (AlertType.OLD, 1)]

    def test_redeemed_coupons_ignored(self, business_service, coupon_factory):
        response = [{"system": 15, "number": 1, "coupons": [
            coupon_factory("R1", days_ago=60, rest=5000, state="Погашен"),
        ]}]

        assert business_service.generate_alerts(business_service.group_coupons_by_station(response)) == []


class TestTopLists:
    """Тесты рейтингов станций и купонов"""

    def test_top_stations_by_debt(self, business_service, coupons_api_response):
        groups = business_service.group_coupons_by_station(coupons_api_response)

        top = CouponsBusinessService.get_top_stations_by_debt(groups, limit=1)

        assert [g.station_id for g in top] == [7]

    def test_top_coupons_by_rest_only_active(self, business_service, coupons_api_response):
        groups = business_service.group_coupons_by_station(coupons_api_response)

        top = CouponsBusinessService.get_top_coupons_by_rest(groups)

        assert [c.number for c in top] == ["C-BIG", "C-OLD", "C-CRIT", "C-NEW"]

    def test_find_coupon(self, business_service, coupons_api_response):
        groups = business_service.group_coupons_by_station(coupons_api_response)

        assert CouponsBusinessService.find_coupon_in_groups(groups, "C-NEW").rest == 50
        assert CouponsBusinessService.find_coupon_in_groups(groups, "c-new") is None


class TestMonitoringSettings:
    """Тесты настроек мониторинга"""

    def test_partial_update(self, business_service):
        updated = business_service.update_monitoring_settings({"oldCouponThresholdDays": 14})

        assert updated.old_coupon_threshold_days == 14
        assert updated.critical_coupon_threshold_days == 30
        assert business_service.get_monitoring_settings().old_coupon_threshold_days == 14

    def test_update_changes_classification(self, business_service, coupon_factory):
        coupon = Coupon(**coupon_factory(days_ago=10, rest=10))
        business_service.update_monitoring_settings({"old_coupon_threshold_days": 14})

        assert business_service.enrich_coupon_with_age(coupon).is_old is False

    def test_update_rejects_critical_below_old(self, business_service):
        with pytest.raises(ValidationError):
            business_service.update_monitoring_settings({"critical_coupon_threshold_days": 5})

        assert business_service.get_monitoring_settings().critical_coupon_threshold_days == 30

    def test_update_both_thresholds_together(self, business_service):
        settings = business_service.update_monitoring_settings({
            "old_coupon_threshold_days": 40,
            "critical_coupon_threshold_days": 60
        })

        assert settings.old_coupon_threshold_days == 40
        assert settings.critical_coupon_threshold_days == 60

    def test_returned_settings_are_copies(self, business_service):
        settings = business_service.get_monitoring_settings()
        settings.old_coupon_threshold_days = 99

        assert business_service.get_monitoring_settings().old_coupon_threshold_days == 7

    def test_constructor_settings_copied(self):
        settings = CouponsMonitoringSettings(large_amount_threshold=100)
        service = CouponsBusinessService(settings)
        settings.large_amount_threshold = 5

        assert service.get_monitoring_settings().large_amount_threshold == 100


class TestCsvExport:
    """Тесты экспорта в CSV"""

    def test_header_and_rows(self, business_service, coupons_api_response):
        groups = business_service.group_coupons_by_station(coupons_api_response)
        coupons = [c for g in groups for c in g.coupons]

        content = CouponsBusinessService.export_to_csv(coupons)
        lines = content.split("\n")

        assert len(lines) == len(coupons) + 1
        assert lines[0] == ",".join(f'"{h}"' for h in CSV_HEADERS)
        assert lines[1] == (
            '"C-OLD","2024-06-07T12:00:00+00:00","1","10","100","500","0","500","Активен","8","attention"'
        )
        assert not content.endswith("\n")

    def test_quotes_are_doubled(self, business_service, coupon_factory):
        coupon = business_service.enrich_coupon_with_age(Coupon(**coupon_factory('A"1', rest=12.5)))

        line = CouponsBusinessService.export_to_csv([coupon]).split("\n")[1]

        assert line.startswith('"A""1",')
        assert '"12.5"' in line

    def test_newline_inside_value_stays_quoted(self, business_service, coupon_factory):
        coupon = business_service.enrich_coupon_with_age(Coupon(**coupon_factory("A\n1")))

        content = CouponsBusinessService.export_to_csv([coupon])
        records = list(csv.reader(io.StringIO(content)))

        # Перевод строки внутри значения остается в кавычках и не начинает новую запись
        assert content.split("\n")[1] == '"A'
        assert len(records) == 2
        assert records[1][0] == "A\n1"

    def test_empty_export_is_header_only(self):
        assert CouponsBusinessService.export_to_csv([]) == ",".join(f'"{h}"' for h in CSV_HEADERS)

    @pytest.mark.parametrize("value,expected", [(500.0, "500"), (500.5, "500.5"), (3, "3"), (0.0, "0")])
    def test_format_number(self, value, expected):
        assert format_number(value) == expected
