"""Merchant dashboard reports.

Each report resolves its period, builds the merchant's match criteria and
goes through the report cache, so a closed period is computed once per
calendar unit. Reports that show a "previous" value resolve the
predecessor period and run it as an independent, separately cached report.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from billing_reports import cache as keys
from billing_reports.aggregate.dashboard import DashboardAggregations
from billing_reports.cache import ReportCache
from billing_reports.db import to_object_id
from billing_reports.frames import fill_daily_chart
from billing_reports.models import (
    CustomerMetricsReport,
    DashboardBaseReports,
    DashboardCustomerReport,
    DashboardMainReport,
    GrossRevenueAndVatReport,
    RevenueByCountryReport,
    RevenueDynamicReport,
    SalesTodayReport,
    SourcesReport,
    TotalTransactionsAndArpuReport,
)
from billing_reports.periods import Granularity, PeriodResolver, PeriodToken, ReportWindow
from billing_reports.pipeline import MatchCriteria

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PROCESSED = "processed"
SETTLED_STATUSES = {"$in": ["processed", "refunded", "chargeback"]}

Compute = Callable[[MatchCriteria, Granularity], M]


def dashboard_criteria(merchant_id: str, window: ReportWindow, status: Any) -> MatchCriteria:
    """Order transactions of a merchant closed inside `window`."""
    return MatchCriteria({
        "merchant_id": to_object_id(merchant_id, "merchant_id"),
        "status": status,
        "type": "order",
        "pm_order_close_date": {"$gte": window.start, "$lte": window.end},
    })


def share(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


class DashboardService:
    """Builds the main, base, revenue dynamic and customer dashboards."""

    def __init__(
        self,
        resolver: PeriodResolver,
        report_cache: ReportCache,
        aggregations: DashboardAggregations,
    ) -> None:
        self.resolver = resolver
        self.report_cache = report_cache
        self.aggregations = aggregations

    def _report(
        self,
        mask: str,
        merchant_id: str,
        period: str | PeriodToken,
        status: Any,
        compute: Compute[M],
        model: type[M],
    ) -> M:
        window, policy = self.resolver.resolve(period)
        criteria = dashboard_criteria(merchant_id, window, status)
        policy = policy.with_key(mask % criteria.digest())
        log.debug("Report %s for %s (lifetime %s)", policy.key, period, policy.lifetime)
        return self.report_cache.execute(
            policy.key,
            policy.lifetime,
            lambda: compute(criteria, window.granularity),
            model,
        )

    # --------------------------------------------------
    # MAIN
    # --------------------------------------------------
    def get_main_report(self, merchant_id: str, period: str | PeriodToken) -> DashboardMainReport:
        """Gross revenue, VAT, transaction count and ARPU against the previous period.

        Raises:
            InvalidPeriod: for unknown periods and for the oldest (`two_*_ago`) tier.
        """
        previous = self.resolver.predecessor(period)
        agg = self.aggregations

        def revenue(p: str | PeriodToken) -> GrossRevenueAndVatReport:
            return self._report(
                keys.DASHBOARD_MAIN_GROSS_REVENUE_AND_VAT, merchant_id, p, PROCESSED,
                agg.execute_gross_revenue_and_vat, GrossRevenueAndVatReport,
            )

        def transactions(p: str | PeriodToken) -> TotalTransactionsAndArpuReport:
            return self._report(
                keys.DASHBOARD_MAIN_TOTAL_TRANSACTIONS_AND_ARPU, merchant_id, p, SETTLED_STATUSES,
                agg.execute_total_transactions_and_arpu, TotalTransactionsAndArpuReport,
            )

        revenue_current, revenue_previous = revenue(period), revenue(previous)
        tx_current, tx_previous = transactions(period), transactions(previous)

        return DashboardMainReport(
            gross_revenue=revenue_current.gross_revenue.model_copy(
                update={"amount_previous": revenue_previous.gross_revenue.amount_current}
            ),
            vat=revenue_current.vat.model_copy(
                update={"amount_previous": revenue_previous.vat.amount_current}
            ),
            total_transactions=tx_current.total_transactions.model_copy(
                update={"count_previous": tx_previous.total_transactions.count_current}
            ),
            arpu=tx_current.arpu.model_copy(
                update={"amount_previous": tx_previous.arpu.amount_current}
            ),
        )

    # --------------------------------------------------
    # BASE
    # --------------------------------------------------
    def get_base_report(self, merchant_id: str, period: str | PeriodToken) -> DashboardBaseReports:
        """Revenue by country, top products and top sources with previous totals."""
        previous = self.resolver.predecessor(period)
        agg = self.aggregations

        def both(mask: str, compute: Compute[M], model: type[M]) -> tuple[M, M]:
            return (
                self._report(mask, merchant_id, period, PROCESSED, compute, model),
                self._report(mask, merchant_id, previous, PROCESSED, compute, model),
            )

        country, country_prev = both(
            keys.DASHBOARD_BASE_REVENUE_BY_COUNTRY, agg.execute_revenue_by_country, RevenueByCountryReport
        )
        sales, sales_prev = both(
            keys.DASHBOARD_BASE_SALES_TODAY, agg.execute_sales_today, SalesTodayReport
        )
        sources, sources_prev = both(
            keys.DASHBOARD_BASE_SOURCES, agg.execute_sources, SourcesReport
        )

        return DashboardBaseReports(
            revenue_by_country=country.model_copy(update={"total_previous": country_prev.total_current}),
            sales_today=sales.model_copy(update={"total_previous": sales_prev.total_current}),
            sources=sources.model_copy(update={"total_previous": sources_prev.total_current}),
        )

    # --------------------------------------------------
    # REVENUE DYNAMIC
    # --------------------------------------------------
    def get_revenue_dynamics_report(
        self, merchant_id: str, period: str | PeriodToken
    ) -> RevenueDynamicReport:
        return self._report(
            keys.DASHBOARD_REVENUE_DYNAMIC, merchant_id, period, PROCESSED,
            self.aggregations.execute_revenue_dynamic, RevenueDynamicReport,
        )

    # --------------------------------------------------
    # CUSTOMERS
    # --------------------------------------------------
    def _customer_metrics(self, merchant_id: str, period: str | PeriodToken) -> CustomerMetricsReport:
        return self._report(
            keys.DASHBOARD_CUSTOMERS, merchant_id, period, PROCESSED,
            lambda criteria, _granularity: self.aggregations.execute_customer_metrics(criteria),
            CustomerMetricsReport,
        )

    def get_customers_report(
        self, merchant_id: str, period: str | PeriodToken
    ) -> DashboardCustomerReport:
        """Customer shares, averages, top-20% revenue and a daily customer chart.

        - new: customers active now but not in the previous period, over the
          merchant's all-time customer count
        - returning: previous-period customers active again now, over the
          current customer count
        - lost: `1 - returning`
        """
        previous = self.resolver.predecessor(period)
        window, _ = self.resolver.resolve(period)

        current = self._customer_metrics(merchant_id, period)
        before = self._customer_metrics(merchant_id, previous)

        current_ids = set(current.customer_ids)
        previous_ids = set(before.customer_ids)

        new_customers = share(len(current_ids - previous_ids), current.customers_total)
        returning = share(len(current_ids & previous_ids), len(current_ids))

        return DashboardCustomerReport(
            new_customers_percentage=new_customers,
            returning_customers_percentage=returning,
            lost_customers_percentage=1 - returning,
            avg_ltv_customer=current.avg_ltv,
            avg_orders_count=current.avg_orders_count,
            top20_customers=current.top20,
            chart=fill_daily_chart(current.days, window),
        )

    def get_customer_arpu(self, merchant_id: str, customer_id: str) -> TotalTransactionsAndArpuReport:
        """Transactions and ARPU of one customer across all of their history."""
        window, _ = self.resolver.resolve(PeriodToken.CURRENT_YEAR)
        criteria = dashboard_criteria(merchant_id, window, PROCESSED)
        return self.aggregations.execute_customer_arpu(criteria, customer_id, window.granularity)
