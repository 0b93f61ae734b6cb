"""Dashboard report pipelines.

Every dashboard report starts from a `MatchCriteria` scoped to one merchant,
a status constraint and a `pm_order_close_date` window, and groups its chart
series by the window's `Granularity`. Buckets without transactions are not
synthesized; only buckets with at least one transaction appear.

Expectations:
- Input: `order_view` documents with `pm_order_close_date`, `status`,
  `payment_gross_revenue`, `payment_tax_fee`, `net_revenue`, `items`,
  `project.name`, `billing_address`, `user`, `issuer`
- Outputs: the report models documented on each `execute_*` method
"""

from __future__ import annotations

import logging
import math

from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.money import to_precise
from billing_reports.models import (
    AmountItemWithChart,
    ChartItem,
    CustomerMetricsReport,
    GrossRevenueAndVatReport,
    RevenueByCountryReport,
    RevenueDynamicItem,
    ReportModel,
    RevenueDynamicReport,
    SalesTodayReport,
    SourcesReport,
    Top20Customers,
    TotalTransactionsAndArpuReport,
)
from billing_reports.periods import Granularity
from billing_reports.pipeline import (
    BUCKET_NAMES,
    MatchCriteria,
    Pipeline,
    Stage,
    add_fields,
    bucket_fields,
    carry,
    close_date_label,
    count,
    english_names,
    facet,
    first,
    first_of,
    group,
    if_null,
    items_or_placeholder,
    limit,
    match,
    period_in_day,
    pipeline,
    project,
    project_fields,
    sort,
    total,
    unwind,
)

log = logging.getLogger(__name__)

BASE_REPORTS_ITEMS_LIMIT = 5
TOP_CUSTOMERS_SHARE = 0.2
CUSTOMER_ID = "$user.external_id"
CLOSE_DATE_FIELD = "pm_order_close_date"


class _CountRow(ReportModel):
    count: int = 0


class _RevenueRow(ReportModel):
    revenue: float = 0.0


def _bucketed(**fields: object) -> Pipeline:
    """Project calendar buckets plus `fields`, then derive `period_in_day`."""
    return pipeline(
        project(**bucket_fields(), **fields),
        add_fields(period_in_day=period_in_day()),
    )


def _chart_sort(granularity: Granularity) -> Stage:
    # period_in_day keys ("9 16-23", "10 00-07") do not sort as text
    if granularity is Granularity.PERIOD_IN_DAY:
        return sort(("label", 1))
    return sort(("_id", 1))


def _chart(granularity: Granularity, value: object, sort_key: str | None = None) -> Pipeline:
    return pipeline(
        group(granularity.value, label=close_date_label(), value=value),
        sort((sort_key, 1)) if sort_key else _chart_sort(granularity),
    )


# =========================================================
# MAIN REPORT
# =========================================================

def gross_revenue_and_vat_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    """Window totals of gross revenue and VAT plus one chart series for each."""
    return pipeline(
        match(criteria),
        _bucketed(
            revenue_amount="$payment_gross_revenue.amount",
            vat_amount="$payment_tax_fee.amount",
            currency=if_null("$payment_gross_revenue.currency", ""),
        ),
        facet(
            main=[
                group(
                    None,
                    gross_revenue=total("$revenue_amount"),
                    currency=first("$currency"),
                    vat_amount=total("$vat_amount"),
                ),
            ],
            chart_gross_revenue=_chart(granularity, total("$revenue_amount")),
            chart_vat=_chart(granularity, total("$vat_amount")),
        ),
        project(
            gross_revenue={
                "amount": first_of("$main.gross_revenue"),
                "currency": first_of("$main.currency"),
                "chart": "$chart_gross_revenue",
            },
            vat={
                "amount": first_of("$main.vat_amount"),
                "currency": first_of("$main.currency"),
                "chart": "$chart_vat",
            },
        ),
    )


def total_transactions_and_arpu_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    """Transaction counts and revenue per transaction; only processed rows earn revenue."""
    arpu = {"$divide": ["$gross_revenue", "$total_transactions"]}
    return pipeline(
        match(criteria),
        _bucketed(
            revenue_amount={
                "$cond": [{"$eq": ["$status", "processed"]}, "$payment_gross_revenue.amount", 0],
            },
            currency=if_null("$payment_gross_revenue.currency", ""),
        ),
        facet(
            main=[
                group(
                    None,
                    gross_revenue=total("$revenue_amount"),
                    currency=first("$currency"),
                    total_transactions=total(1),
                ),
                add_fields(arpu=arpu),
            ],
            chart_total_transactions=_chart(granularity, total(1)),
            chart_arpu=[
                group(
                    granularity.value,
                    label=close_date_label(),
                    gross_revenue=total("$revenue_amount"),
                    total_transactions=total(1),
                ),
                add_fields(value=arpu),
                project(label="$label", value="$value"),
                _chart_sort(granularity),
            ],
        ),
        project(
            total_transactions={
                "count": first_of("$main.total_transactions"),
                "chart": "$chart_total_transactions",
            },
            arpu={
                "amount": first_of("$main.arpu"),
                "currency": first_of("$main.currency"),
                "chart": "$chart_arpu",
            },
        ),
    )


# =========================================================
# REVENUE DYNAMIC
# =========================================================

def revenue_dynamic_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    return pipeline(
        match(criteria),
        _bucketed(
            amount="$net_revenue.amount",
            currency=if_null("$net_revenue.currency", ""),
        ),
        group(
            granularity.value,
            label=close_date_label(),
            amount=total("$amount"),
            currency=first("$currency"),
            count=total(1),
        ),
        _chart_sort(granularity),
    )


# =========================================================
# BASE REPORTS
# =========================================================

def revenue_by_country_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    """Top countries by net revenue, the window total and a revenue chart.

    The country comes from the billing address, or from the customer's own
    address when no billing country was captured.
    """
    country = {
        "$cond": [
            {"$eq": [if_null("$billing_address.country", ""), ""]},
            "$user.address.country",
            "$billing_address.country",
        ]
    }
    return pipeline(
        match(criteria),
        _bucketed(
            country=country,
            amount="$net_revenue.amount",
            currency=if_null("$net_revenue.currency", ""),
        ),
        facet(
            currency=[project(currency="$currency"), limit(1)],
            top=[
                group("$country", amount=total("$amount")),
                sort(("amount", -1)),
                limit(BASE_REPORTS_ITEMS_LIMIT),
            ],
            total=[group(None, amount=total("$amount"))],
            chart=[
                group(granularity.value, label=close_date_label(), amount=total("$amount")),
                sort(("label", 1)),
            ],
        ),
        project(
            currency=first_of("$currency.currency"),
            top="$top",
            total=first_of("$total.amount"),
            chart="$chart",
        ),
    )


def _top_count_facet(key: str, granularity: Granularity) -> Pipeline:
    return pipeline(
        facet(
            top=[
                group(key, name=first(key), count=total(1)),
                sort(("count", -1)),
                limit(BASE_REPORTS_ITEMS_LIMIT),
            ],
            total=[group(None, count=total(1))],
            chart=_chart(granularity, total(1), sort_key="label"),
        ),
        project(top="$top", total=first_of("$total.count"), chart="$chart"),
    )


def sales_today_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    """Top products by number of sold line items.

    Orders without line items count once under the project's first English
    name; otherwise every line item counts under its own name.
    """
    item = {
        "$cond": [
            {"$eq": ["$items", ""]},
            first_of("$names.value"),
            "$items.name",
        ]
    }
    return pipeline(
        match(criteria),
        project(**bucket_fields(), names=english_names(), items=items_or_placeholder()),
        unwind("$items"),
        project_fields({**carry(*BUCKET_NAMES), "item": item}),
        add_fields(period_in_day=period_in_day()),
        _top_count_facet("$item", granularity),
    )


def sources_pipeline(criteria: MatchCriteria, granularity: Granularity) -> Pipeline:
    """Top payment issuers (the page the payment was started from)."""
    return pipeline(
        match(criteria),
        _bucketed(issuer="$issuer.url"),
        _top_count_facet("$issuer", granularity),
    )


# =========================================================
# CUSTOMERS
# =========================================================

def _per_customer_average(numerator: str, per_customer: dict[str, object]) -> Pipeline:
    return pipeline(
        group(CUSTOMER_ID, **per_customer),
        group(None, user_count=total(1), numerator=total(f"${numerator}")),
        project(avg={"$divide": ["$numerator", "$user_count"]}),
    )


def customer_metrics_pipeline(criteria: MatchCriteria) -> Pipeline:
    """Distinct customers, average LTV, average orders and a per-day customer count."""
    return pipeline(
        match(criteria),
        facet(
            customers=[group(CUSTOMER_ID)],
            ltv=_per_customer_average("revenue", {"revenue": total("$net_revenue.amount")}),
            orders=_per_customer_average("orders", {"orders": total(1)}),
            days=[
                project(
                    date={"$dateToString": {"date": "$pm_order_close_date", "format": "%Y-%m-%d"}},
                    user_id=CUSTOMER_ID,
                ),
                group({"date": "$date", "user": "$user_id"}),
                group("$_id.date", count=total(1)),
                sort(("_id", 1)),
            ],
        ),
        project(
            customer_ids="$customers._id",
            avg_ltv=first_of("$ltv.avg"),
            avg_orders_count=first_of("$orders.avg"),
            days="$days",
        ),
    )


def customers_count_pipeline(criteria: MatchCriteria) -> Pipeline:
    return pipeline(match(criteria), group(CUSTOMER_ID), count("count"))


def top_customers_revenue_pipeline(criteria: MatchCriteria, top_count: int) -> Pipeline:
    """Net revenue of the `top_count` customers that brought the most."""
    return pipeline(
        match(criteria),
        group(CUSTOMER_ID, revenue=total("$net_revenue.amount")),
        sort(("revenue", -1)),
        limit(top_count),
        group(None, revenue=total("$revenue")),
    )


def top_customers_count(customers_count: int) -> int:
    """Size of the top-20% customer group; 1-4 customers yield 0."""
    return int(math.floor(customers_count * TOP_CUSTOMERS_SHARE))


# =========================================================
# EXECUTION
# =========================================================

def _precise_amount_item(item: AmountItemWithChart) -> AmountItemWithChart:
    return item.model_copy(
        update={
            "amount_current": to_precise(item.amount_current),
            "chart": [
                ChartItem(label=point.label, value=to_precise(point.value)) for point in item.chart
            ],
        }
    )


class DashboardAggregations:
    """Computes dashboard reports for an already resolved window."""

    def __init__(self, executor: AggregationExecutor) -> None:
        self.executor = executor

    def execute_gross_revenue_and_vat(
        self, criteria: MatchCriteria, granularity: Granularity
    ) -> GrossRevenueAndVatReport:
        report = self.executor.run(
            gross_revenue_and_vat_pipeline(criteria, granularity), GrossRevenueAndVatReport
        )
        return report.model_copy(
            update={
                "gross_revenue": _precise_amount_item(report.gross_revenue),
                "vat": _precise_amount_item(report.vat),
            }
        )

    def execute_total_transactions_and_arpu(
        self, criteria: MatchCriteria, granularity: Granularity
    ) -> TotalTransactionsAndArpuReport:
        report = self.executor.run(
            total_transactions_and_arpu_pipeline(criteria, granularity),
            TotalTransactionsAndArpuReport,
        )
        return report.model_copy(update={"arpu": _precise_amount_item(report.arpu)})

    def execute_revenue_dynamic(
        self, criteria: MatchCriteria, granularity: Granularity
    ) -> RevenueDynamicReport:
        items = self.executor.run_many(
            revenue_dynamic_pipeline(criteria, granularity), RevenueDynamicItem
        )
        items = [item.model_copy(update={"amount": to_precise(item.amount)}) for item in items]
        currency = items[0].currency if items else ""
        return RevenueDynamicReport(currency=currency, items=items)

    def execute_revenue_by_country(
        self, criteria: MatchCriteria, granularity: Granularity
    ) -> RevenueByCountryReport:
        report = self.executor.run(
            revenue_by_country_pipeline(criteria, granularity), RevenueByCountryReport
        )
        return report.model_copy(
            update={
                "total_current": to_precise(report.total_current),
                "top": [
                    row.model_copy(update={"amount": to_precise(row.amount)}) for row in report.top
                ],
                "chart": [
                    row.model_copy(update={"amount": to_precise(row.amount)}) for row in report.chart
                ],
            }
        )

    def execute_sales_today(
        self, criteria: MatchCriteria, granularity: Granularity
    ) -> SalesTodayReport:
        return self.executor.run(sales_today_pipeline(criteria, granularity), SalesTodayReport)

    def execute_sources(self, criteria: MatchCriteria, granularity: Granularity) -> SourcesReport:
        """Sources count every transaction regardless of its status."""
        return self.executor.run(
            sources_pipeline(criteria.without("status"), granularity), SourcesReport
        )

    def execute_customer_metrics(self, criteria: MatchCriteria) -> CustomerMetricsReport:
        metrics = self.executor.run(customer_metrics_pipeline(criteria), CustomerMetricsReport)

        all_time = self.executor.run(
            customers_count_pipeline(criteria.without(CLOSE_DATE_FIELD)), _CountRow
        )
        top20 = self.execute_top20_customers(criteria, len(metrics.customer_ids))

        return metrics.model_copy(
            update={
                "customers_total": all_time.count,
                "avg_ltv": to_precise(metrics.avg_ltv),
                "top20": top20,
            }
        )

    def execute_top20_customers(self, criteria: MatchCriteria, customers_count: int) -> Top20Customers:
        top_count = top_customers_count(customers_count)
        log.debug("Top 20%% of %d customers: %d", customers_count, top_count)
        if top_count == 0:
            return Top20Customers()

        row = self.executor.run(top_customers_revenue_pipeline(criteria, top_count), _RevenueRow)
        return Top20Customers(count=top_count, revenue=to_precise(row.revenue))

    def execute_customer_arpu(
        self, criteria: MatchCriteria, customer_id: str, granularity: Granularity
    ) -> TotalTransactionsAndArpuReport:
        """ARPU of one customer across all of their transactions."""
        scoped = criteria.without(CLOSE_DATE_FIELD).with_field("user.external_id", customer_id)
        return self.execute_total_transactions_and_arpu(scoped, granularity)

