from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from billing_reports.aggregate.dashboard import (
    DashboardAggregations,
    revenue_by_country_pipeline,
    top_customers_count,
)
from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.cache import ReportCache
from billing_reports.dashboard import DashboardService
from billing_reports.errors import DecodeFailed, InvalidPeriod, InvalidReference
from billing_reports.periods import Granularity, PeriodResolver, PeriodToken
from billing_reports.pipeline import MatchCriteria

from conftest import MERCHANT_ID, NOW, FakeCache, FakeCollection

START = datetime(2024, 6, 1, tzinfo=timezone.utc)
END = datetime(2024, 6, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)


def _criteria() -> MatchCriteria:
    return MatchCriteria({
        "merchant_id": ObjectId(MERCHANT_ID),
        "status": "processed",
        "type": "order",
        "pm_order_close_date": {"$gte": START, "$lte": END},
    })


def _service(orders: FakeCollection, cache: FakeCache) -> DashboardService:
    return DashboardService(
        PeriodResolver(clock=lambda: NOW),
        ReportCache(cache),
        DashboardAggregations(AggregationExecutor(orders)),  # type: ignore[arg-type]
    )


# --------------------------------------------------
# Aggregations
# --------------------------------------------------
def test_reports_are_zero_valued_when_nothing_matches(executor: AggregationExecutor) -> None:
    agg = DashboardAggregations(executor)
    criteria, day = _criteria(), Granularity.DAY

    revenue = agg.execute_gross_revenue_and_vat(criteria, day)
    assert revenue.gross_revenue.amount_current == 0.0
    assert revenue.vat.chart == []

    tx = agg.execute_total_transactions_and_arpu(criteria, day)
    assert tx.total_transactions.count_current == 0

    dynamic = agg.execute_revenue_dynamic(criteria, day)
    assert dynamic.items == [] and dynamic.currency == ""

    assert agg.execute_revenue_by_country(criteria, day).top == []
    assert agg.execute_sales_today(criteria, day).total_current == 0
    assert agg.execute_sources(criteria, day).chart == []

    metrics = agg.execute_customer_metrics(criteria)
    assert metrics.customer_ids == []
    assert metrics.top20.count == 0 and metrics.top20.revenue == 0.0


def test_gross_revenue_is_decoded_and_normalized(orders: FakeCollection, executor: AggregationExecutor) -> None:
    orders.results.append([{
        "gross_revenue": {
            "amount": 100.005,
            "currency": "USD",
            "chart": [{"_id": 3, "label": 1717400000000, "value": 33.3349}],
        },
        "vat": {"amount": None, "currency": "USD", "chart": []},
    }])
    report = DashboardAggregations(executor).execute_gross_revenue_and_vat(_criteria(), Granularity.DAY)

    assert report.gross_revenue.amount_current == 100.01
    assert report.gross_revenue.currency == "USD"
    assert report.gross_revenue.chart[0].value == 33.33
    assert report.vat.amount_current == 0.0


def test_malformed_document_raises_decode_failed(orders: FakeCollection, executor: AggregationExecutor) -> None:
    orders.results.append([{"total": "lots"}])
    with pytest.raises(DecodeFailed):
        DashboardAggregations(executor).execute_sales_today(_criteria(), Granularity.DAY)


def test_sources_ignore_status(orders: FakeCollection, executor: AggregationExecutor) -> None:
    criteria = _criteria()
    DashboardAggregations(executor).execute_sources(criteria, Granularity.HOUR)

    assert "status" not in orders.pipelines[0][0]["$match"]
    assert criteria["status"] == "processed"


def test_chart_groups_by_window_granularity(orders: FakeCollection, executor: AggregationExecutor) -> None:
    DashboardAggregations(executor).execute_revenue_dynamic(_criteria(), Granularity.PERIOD_IN_DAY)
    stages = orders.pipelines[0]
    assert stages[1]["$project"]["hour"] == {"$hour": "$pm_order_close_date"}
    assert "period_in_day" in stages[2]["$addFields"]
    assert stages[3]["$group"]["_id"] == "$period_in_day"


def test_country_falls_back_to_account_address() -> None:
    stages = revenue_by_country_pipeline(_criteria(), Granularity.DAY).to_list()
    country = stages[1]["$project"]["country"]["$cond"]

    assert country[0] == {"$eq": [{"$ifNull": ["$billing_address.country", ""]}, ""]}
    assert country[1:] == ["$user.address.country", "$billing_address.country"]
    assert stages[3]["$facet"]["top"][0] == {"$group": {"_id": "$country", "amount": {"$sum": "$amount"}}}


def test_week_charts_are_ordered_by_time(orders: FakeCollection, executor: AggregationExecutor) -> None:
    agg = DashboardAggregations(executor)
    agg.execute_revenue_dynamic(_criteria(), Granularity.PERIOD_IN_DAY)
    agg.execute_gross_revenue_and_vat(_criteria(), Granularity.PERIOD_IN_DAY)
    agg.execute_revenue_dynamic(_criteria(), Granularity.DAY)

    week_dynamic, week_revenue, month_dynamic = orders.pipelines
    assert week_dynamic[-1] == {"$sort": {"label": 1}}
    assert week_revenue[-2]["$facet"]["chart_vat"][-1] == {"$sort": {"label": 1}}
    assert month_dynamic[-1] == {"$sort": {"_id": 1}}


@pytest.mark.parametrize("customers, expected", [(0, 0), (1, 0), (4, 0), (5, 1), (12, 2)])
def test_top_customers_count_is_floored(customers: int, expected: int) -> None:
    assert top_customers_count(customers) == expected


def test_top20_needs_five_customers(orders: FakeCollection, executor: AggregationExecutor) -> None:
    orders.results.append([{"customer_ids": ["a", "b", "c", "d"], "avg_ltv": 10.0}])
    metrics = DashboardAggregations(executor).execute_customer_metrics(_criteria())

    assert metrics.top20.count == 0
    assert len(orders.pipelines) == 2


def test_top20_sums_best_customers(orders: FakeCollection, executor: AggregationExecutor) -> None:
    orders.results.extend([
        [{"customer_ids": [f"c{i}" for i in range(10)], "avg_ltv": 12.345, "days": []}],
        [{"count": 25}],
        [{"_id": None, "revenue": 250.555}],
    ])
    metrics = DashboardAggregations(executor).execute_customer_metrics(_criteria())

    assert metrics.customers_total == 25
    assert metrics.avg_ltv == 12.35
    assert metrics.top20.count == 2
    assert metrics.top20.revenue == 250.56
    assert orders.pipelines[2][3] == {"$limit": 2}
    assert "pm_order_close_date" not in orders.pipelines[1][0]["$match"]


def test_customer_arpu_spans_all_history(orders: FakeCollection, executor: AggregationExecutor) -> None:
    criteria = _criteria()
    DashboardAggregations(executor).execute_customer_arpu(criteria, "cust-1", Granularity.MONTH)

    query = orders.pipelines[0][0]["$match"]
    assert "pm_order_close_date" not in query
    assert query["user.external_id"] == "cust-1"
    assert "pm_order_close_date" in criteria


# --------------------------------------------------
# Service
# --------------------------------------------------
@pytest.mark.parametrize("period", [t for t in PeriodToken if t.is_current])
def test_open_periods_never_touch_cache(orders: FakeCollection, fake_cache: FakeCache, period: PeriodToken) -> None:
    _service(orders, fake_cache).get_revenue_dynamics_report(MERCHANT_ID, period)
    assert fake_cache.gets == []
    assert fake_cache.sets == []


def test_closed_period_is_cached_until_current_month_ends(orders: FakeCollection, fake_cache: FakeCache) -> None:
    orders.results.append([{"_id": 1, "label": 1714521600000, "amount": 5.0, "currency": "EUR", "count": 1}])
    service = _service(orders, fake_cache)

    first = service.get_revenue_dynamics_report(MERCHANT_ID, "previous_month")
    second = service.get_revenue_dynamics_report(MERCHANT_ID, "previous_month")

    assert first == second
    assert first.currency == "EUR"
    assert len(orders.pipelines) == 1
    [(key, lifetime)] = fake_cache.sets
    assert key.startswith("dashboard:revenue_dynamic:")
    assert lifetime == datetime(2024, 6, 30, 23, 59, 59, 999000, tzinfo=timezone.utc) - NOW


def test_main_report_carries_previous_values(orders: FakeCollection, fake_cache: FakeCache) -> None:
    def revenue(amount: float) -> list[dict]:
        return [{"gross_revenue": {"amount": amount}, "vat": {"amount": amount / 10}}]

    def transactions(count: int) -> list[dict]:
        return [{"total_transactions": {"count": count}, "arpu": {"amount": 2.5}}]

    orders.results.extend([revenue(200), revenue(150), transactions(8), transactions(6)])
    report = _service(orders, fake_cache).get_main_report(MERCHANT_ID, "current_month")

    assert report.gross_revenue.amount_current == 200
    assert report.gross_revenue.amount_previous == 150
    assert report.vat.amount_previous == 15
    assert report.total_transactions.count_current == 8
    assert report.total_transactions.count_previous == 6
    assert report.arpu.amount_previous == 2.5

    statuses = [p[0]["$match"]["status"] for p in orders.pipelines]
    assert statuses[:2] == ["processed", "processed"]
    assert statuses[2] == {"$in": ["processed", "refunded", "chargeback"]}


def test_base_report_totals_previous(orders: FakeCollection, fake_cache: FakeCache) -> None:
    orders.results.extend([
        [{"top": [{"_id": "DE", "amount": 10.0}], "total": 10.0, "currency": "EUR"}],
        [{"total": 4.0}],
        [{"top": [{"_id": "x", "name": "Sword", "count": 3}], "total": 3}],
        [{"total": 1}],
        [{"total": 7}],
        [{"total": 5}],
    ])
    report = _service(orders, fake_cache).get_base_report(MERCHANT_ID, "current_day")

    assert report.revenue_by_country.top[0].country == "DE"
    assert report.revenue_by_country.total_previous == 4.0
    assert report.sales_today.total_previous == 1
    assert report.sources.total_current == 7
    assert report.sources.total_previous == 5


def test_oldest_tier_has_no_comparison(orders: FakeCollection, fake_cache: FakeCache) -> None:
    with pytest.raises(InvalidPeriod):
        _service(orders, fake_cache).get_main_report(MERCHANT_ID, "two_days_ago")
    assert orders.pipelines == []


def test_malformed_merchant_id(orders: FakeCollection, fake_cache: FakeCache) -> None:
    with pytest.raises(InvalidReference):
        _service(orders, fake_cache).get_revenue_dynamics_report("not-an-id", "current_day")


def test_customers_report(orders: FakeCollection, fake_cache: FakeCache) -> None:
    orders.results.extend([
        [{"customer_ids": ["a", "b", "c", "d"], "avg_ltv": 20.0, "avg_orders_count": 1.5,
          "days": [{"_id": "2024-06-10", "count": 3}]}],
        [{"count": 10}],
        [{"customer_ids": ["a", "b", "x"]}],
        [{"count": 10}],
    ])
    report = _service(orders, fake_cache).get_customers_report(MERCHANT_ID, "current_week")

    assert report.new_customers_percentage == pytest.approx(0.2)
    assert report.returning_customers_percentage == pytest.approx(0.5)
    assert report.lost_customers_percentage == pytest.approx(0.5)
    assert report.avg_ltv_customer == 20.0
    assert report.avg_orders_count == 1.5
    assert [p.label for p in report.chart] == [1, 2, 3, 4, 5, 6, 7]
    assert [p.value for p in report.chart] == [0, 3, 0, 0, 0, 0, 0]
    # previous week is closed and therefore cached
    assert len(fake_cache.sets) == 1
    assert fake_cache.sets[0][1] > timedelta(0)


def test_customers_report_without_customers(orders: FakeCollection, fake_cache: FakeCache) -> None:
    report = _service(orders, fake_cache).get_customers_report(MERCHANT_ID, "current_day")
    assert report.new_customers_percentage == 0.0
    assert report.returning_customers_percentage == 0.0
    assert report.lost_customers_percentage == 1.0
    assert [p.value for p in report.chart] == [0]
