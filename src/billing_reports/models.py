"""Pydantic models for every report shape the engine returns.

Rows decoded from the store ignore unknown fields (aggregations carry helper
fields such as bucket ids). Each cacheable report has a literal `kind` so the
report cache can round-trip it through `ReportResult`.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class ReportModel(BaseModel):
    """Base for decoded report rows; instances are read-only values."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _nulls_as_defaults(cls, data: Any) -> Any:
        # $arrayElemAt over an empty facet and $first over missing fields yield null
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# =========================================================
# DASHBOARD
# =========================================================

class ChartItem(ReportModel):
    """One chart bucket: `label` is the last close timestamp (epoch ms) in it."""
    label: int = 0
    value: float = 0.0


class AmountItemWithChart(ReportModel):
    amount_current: float = Field(0.0, alias="amount")
    amount_previous: float = 0.0
    currency: str = ""
    chart: list[ChartItem] = Field(default_factory=list)


class TotalTransactions(ReportModel):
    count_current: int = Field(0, alias="count")
    count_previous: int = 0
    chart: list[ChartItem] = Field(default_factory=list)


class GrossRevenueAndVatReport(ReportModel):
    kind: Literal["gross_revenue_and_vat"] = "gross_revenue_and_vat"
    gross_revenue: AmountItemWithChart = Field(default_factory=AmountItemWithChart)
    vat: AmountItemWithChart = Field(default_factory=AmountItemWithChart)


class TotalTransactionsAndArpuReport(ReportModel):
    kind: Literal["total_transactions_and_arpu"] = "total_transactions_and_arpu"
    total_transactions: TotalTransactions = Field(default_factory=TotalTransactions)
    arpu: AmountItemWithChart = Field(default_factory=AmountItemWithChart)


class RevenueDynamicItem(ReportModel):
    label: int = 0
    amount: float = 0.0
    currency: str = ""
    count: int = 0


class RevenueDynamicReport(ReportModel):
    kind: Literal["revenue_dynamic"] = "revenue_dynamic"
    currency: str = ""
    items: list[RevenueDynamicItem] = Field(default_factory=list)


class CountryTopItem(ReportModel):
    country: str | None = Field(None, alias="_id")
    amount: float = 0.0


class CountryChartItem(ReportModel):
    label: int = 0
    amount: float = 0.0


class RevenueByCountryReport(ReportModel):
    kind: Literal["revenue_by_country"] = "revenue_by_country"
    currency: str = ""
    top: list[CountryTopItem] = Field(default_factory=list)
    total_current: float = Field(0.0, alias="total")
    total_previous: float = 0.0
    chart: list[CountryChartItem] = Field(default_factory=list)


class TopItem(ReportModel):
    name: str | None = None
    count: int = 0


class SalesTodayReport(ReportModel):
    kind: Literal["sales_today"] = "sales_today"
    top: list[TopItem] = Field(default_factory=list)
    total_current: int = Field(0, alias="total")
    total_previous: int = 0
    chart: list[ChartItem] = Field(default_factory=list)


class SourcesReport(ReportModel):
    kind: Literal["sources"] = "sources"
    top: list[TopItem] = Field(default_factory=list)
    total_current: int = Field(0, alias="total")
    total_previous: int = 0
    chart: list[ChartItem] = Field(default_factory=list)


class Top20Customers(ReportModel):
    count: int = 0
    revenue: float = 0.0


class CustomerDay(ReportModel):
    date: str = Field(alias="_id")
    count: int = 0


class CustomerMetricsReport(ReportModel):
    """Per-period customer snapshot the customer dashboard is derived from.

    Attributes:
        customer_ids: Distinct external customer ids active in the window.
        customers_total: Distinct customers of the merchant across all time.
        avg_ltv: Net revenue per customer in the window.
        avg_orders_count: Transactions per customer in the window.
        top20: Customers in the top 20% by net revenue and their revenue.
        days: Distinct customers per day that had any, ascending by date.
    """
    kind: Literal["customer_metrics"] = "customer_metrics"
    customer_ids: list[str] = Field(default_factory=list)
    customers_total: int = 0
    avg_ltv: float = 0.0
    avg_orders_count: float = 0.0
    top20: Top20Customers = Field(default_factory=Top20Customers)
    days: list[CustomerDay] = Field(default_factory=list)

    @field_validator("customer_ids", mode="before")
    @classmethod
    def _known_customers(cls, v: Any) -> list[str]:
        return [str(c) for c in v or [] if c is not None]


ReportResult = Annotated[
    Union[
        GrossRevenueAndVatReport,
        TotalTransactionsAndArpuReport,
        RevenueDynamicReport,
        RevenueByCountryReport,
        SalesTodayReport,
        SourcesReport,
        CustomerMetricsReport,
    ],
    Field(discriminator="kind"),
]

REPORT_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ReportResult)


class DashboardMainReport(ReportModel):
    gross_revenue: AmountItemWithChart
    vat: AmountItemWithChart
    total_transactions: TotalTransactions
    arpu: AmountItemWithChart


class DashboardBaseReports(ReportModel):
    revenue_by_country: RevenueByCountryReport
    sales_today: SalesTodayReport
    sources: SourcesReport


class DashboardCustomerReport(ReportModel):
    new_customers_percentage: float = 0.0
    returning_customers_percentage: float = 0.0
    lost_customers_percentage: float = 0.0
    avg_ltv_customer: float = 0.0
    avg_orders_count: float = 0.0
    top20_customers: Top20Customers = Field(default_factory=Top20Customers)
    chart: list[ChartItem] = Field(default_factory=list)


# =========================================================
# ROYALTY
# =========================================================

class RoyaltySummaryItem(ReportModel):
    """Royalty summary row for a product/region, or the grand total row."""
    product: str = ""
    region: str = ""
    currency: str = ""
    total_transactions: int = 0
    sales_count: int = 0
    returns_count: int = 0
    gross_sales_amount: float = 0.0
    gross_returns_amount: float = 0.0
    gross_total_amount: float = 0.0
    purchase_fees: float = 0.0
    refund_fees: float = 0.0
    total_fees: float = 0.0
    purchase_tax: float = 0.0
    refund_tax: float = 0.0
    total_vat: float = 0.0
    net_revenue_total: float = 0.0
    refund_reverse_revenue_total: float = 0.0
    payout_amount: float = 0.0

    @field_validator("product", "region", "currency", mode="before")
    @classmethod
    def _text_or_blank(cls, v: Any) -> str:
        return "" if v is None else str(v)


class RoyaltySummary(ReportModel):
    items: list[RoyaltySummaryItem] = Field(default_factory=list)
    total: RoyaltySummaryItem = Field(default_factory=RoyaltySummaryItem)
    order_ids: list[str] = Field(default_factory=list)


# =========================================================
# PAYLINK
# =========================================================

class Utm(ReportModel):
    utm_source: str = ""
    utm_medium: str = ""
    utm_campaign: str = ""


class StatCommon(ReportModel):
    """Paylink statistics row keyed by whatever dimension it was grouped on."""
    id: str | None = Field(None, alias="_id")
    paylink_id: str = ""
    country_code: str | None = None
    referrer_host: str | None = None
    date: str | None = None
    utm: Utm | None = None
    transactions_currency: str | None = None
    total_transactions: int = 0
    sales_count: int = 0
    returns_count: int = 0
    gross_sales_amount: float = 0.0
    gross_returns_amount: float = 0.0
    gross_total_amount: float = 0.0
    visits: int = 0
    conversion: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, v: Any) -> str | None:
        return None if v is None else str(v)


class GroupStatCommon(ReportModel):
    top: list[StatCommon] = Field(default_factory=list)
    total: StatCommon = Field(default_factory=StatCommon)
