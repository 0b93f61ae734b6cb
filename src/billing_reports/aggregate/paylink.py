"""Payment link statistics.

Each grouped statistic is a `$facet` with the top 10 dimension values in
ascending key order plus a grand total over the same matched transactions.
Rows are precision-normalized and then passed through a per-dimension
`conform` function that labels them (country, referrer, date or UTM tuple).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pymongo.collection import Collection

from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.db import count_documents, to_object_id
from billing_reports.errors import StatDataInconsistent
from billing_reports.models import GroupStatCommon, StatCommon, Utm
from billing_reports.money import to_precise
from billing_reports.pipeline import (
    Pipeline,
    add_fields,
    count_if_order,
    facet,
    first,
    first_of,
    group,
    limit,
    match,
    pipeline,
    project,
    sort,
    total,
)

log = logging.getLogger(__name__)

PAYLINK_REFERENCE_TYPE = "paylink"
TOP_LIMIT = 10
UTM_SEPARATOR = "&"

DATE_KEY = {"$dateToString": {"format": "%Y-%m-%d", "date": "$pm_order_close_date"}}
UTM_KEY = {
    "$concat": [
        "$issuer.utm_source", UTM_SEPARATOR,
        "$issuer.utm_medium", UTM_SEPARATOR,
        "$issuer.utm_campaign",
    ]
}

ConformFn = Callable[[StatCommon], StatCommon]


def _from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def date_bounds(start: int = 0, end: int = 0) -> dict[str, datetime]:
    """`pm_order_close_date` range from unix seconds; 0 leaves that side open."""
    bounds: dict[str, datetime] = {}
    if start > 0:
        bounds["$gte"] = _from_unix(start)
    if end > 0:
        bounds["$lte"] = _from_unix(end)
    return bounds


def paylink_match(paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> dict[str, Any]:
    query: dict[str, Any] = {
        "merchant_id": to_object_id(merchant_id, "merchant_id"),
        "issuer.reference_type": PAYLINK_REFERENCE_TYPE,
        "issuer.reference": paylink_id,
    }
    bounds = date_bounds(start, end)
    if bounds:
        query["pm_order_close_date"] = bounds
    return query


def stat_grouping(key: Any) -> Pipeline:
    """Per-key transaction counts and gross sales/returns."""
    return pipeline(
        group(
            key,
            total_transactions=total(1),
            gross_sales_amount=total("$payment_gross_revenue.amount"),
            gross_returns_amount=total("$refund_gross_revenue.amount"),
            sales_count=count_if_order(),
            country_code=first("$country_code"),
            transactions_currency=first("$merchant_payout_currency"),
        ),
        add_fields(
            returns_count={"$subtract": ["$total_transactions", "$sales_count"]},
            gross_total_amount={"$subtract": ["$gross_sales_amount", "$gross_returns_amount"]},
        ),
    )


def group_stat_pipeline(query: dict[str, Any], key: Any) -> Pipeline:
    return pipeline(
        match(query),
        facet(
            top=stat_grouping(key).then(sort(("_id", 1)), limit(TOP_LIMIT)),
            total=stat_grouping(""),
        ),
        project(top="$top", total=first_of("$total")),
    )


def stat_precise(item: StatCommon) -> StatCommon:
    return item.model_copy(update={
        "gross_sales_amount": to_precise(item.gross_sales_amount),
        "gross_returns_amount": to_precise(item.gross_returns_amount),
        "gross_total_amount": to_precise(item.gross_total_amount),
    })


def split_utm(key: str | None) -> Utm | None:
    """Split a ``source&medium&campaign`` key back into its parts."""
    if not key:
        return None
    parts = (key.split(UTM_SEPARATOR, 2) + ["", ""])[:3]
    return Utm(utm_source=parts[0], utm_medium=parts[1], utm_campaign=parts[2])


class PaylinkStatAggregator:
    """Statistics for a single payment link of a merchant."""

    def __init__(
        self,
        executor: AggregationExecutor,
        visits: Collection[dict[str, Any]],
    ) -> None:
        self.executor = executor
        self.visits = visits

    def group_stat(
        self,
        paylink_id: str,
        merchant_id: str,
        start: int,
        end: int,
        key: Any,
        conform: ConformFn,
    ) -> GroupStatCommon:
        """Top dimension values and the grand total for a payment link.

        Args:
            paylink_id: Payment link id, as stored in `issuer.reference`.
            merchant_id: Merchant hex id.
            start: Unix seconds, 0 for no lower bound.
            end: Unix seconds, 0 for no upper bound.
            key: Grouping key: a field path or a derived expression.
            conform: Labels each row after precision normalization.

        Returns:
            At most 10 `top` rows and a `total` row, zero-valued when nothing matched.

        Raises:
            InvalidReference: if `merchant_id` is not a valid id.
            StoreQueryFailed: on store failures.
            DecodeFailed: if the result does not fit `GroupStatCommon`.
        """
        query = paylink_match(paylink_id, merchant_id, start, end)
        pipe = group_stat_pipeline(query, key)
        docs = self.executor.documents(pipe)
        raw = self.executor.decode(docs[0], GroupStatCommon, pipe) if docs else GroupStatCommon()

        has_total = bool(docs) and docs[0].get("total") is not None
        result_total = raw.total if has_total else StatCommon(paylink_id=paylink_id)

        return GroupStatCommon(
            top=[conform(stat_precise(item)) for item in raw.top[:TOP_LIMIT]],
            total=conform(stat_precise(result_total)),
        )

    def stat_by_country(self, paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> GroupStatCommon:
        def conform(item: StatCommon) -> StatCommon:
            return item.model_copy(update={"paylink_id": paylink_id, "country_code": item.id})

        return self.group_stat(paylink_id, merchant_id, start, end, "$country_code", conform)

    def stat_by_referrer(self, paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> GroupStatCommon:
        def conform(item: StatCommon) -> StatCommon:
            return item.model_copy(update={"paylink_id": paylink_id, "referrer_host": item.id})

        return self.group_stat(paylink_id, merchant_id, start, end, "$issuer.referrer_host", conform)

    def stat_by_date(self, paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> GroupStatCommon:
        def conform(item: StatCommon) -> StatCommon:
            return item.model_copy(update={"paylink_id": paylink_id, "date": item.id})

        return self.group_stat(paylink_id, merchant_id, start, end, DATE_KEY, conform)

    def stat_by_utm(self, paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> GroupStatCommon:
        def conform(item: StatCommon) -> StatCommon:
            return item.model_copy(update={"paylink_id": paylink_id, "utm": split_utm(item.id)})

        return self.group_stat(paylink_id, merchant_id, start, end, UTM_KEY, conform)

    def stat_total(self, paylink_id: str, merchant_id: str, start: int = 0, end: int = 0) -> StatCommon:
        """Ungrouped summary of the payment link, with visits and conversion.

        Raises:
            StatDataInconsistent: if the transactions span more than one payout currency.
        """
        pipe = pipeline(
            match(paylink_match(paylink_id, merchant_id, start, end)),
            stat_grouping("$merchant_payout_currency"),
        )
        rows = self.executor.run_many(pipe, StatCommon)
        if len(rows) > 1:
            log.error(
                "Paylink %s has transactions in %d payout currencies",
                paylink_id,
                len(rows),
            )
            raise StatDataInconsistent("paylink stat data inconsistent")

        stat = stat_precise(rows[0]) if rows else StatCommon()
        visits = self.count_visits(paylink_id, start, end)
        conversion = stat.sales_count / visits if visits else 0.0
        return stat.model_copy(update={
            "paylink_id": paylink_id,
            "visits": visits,
            "conversion": to_precise(conversion),
        })

    def count_visits(self, paylink_id: str, start: int = 0, end: int = 0) -> int:
        """Number of recorded visits of the payment link page in the window."""
        query: dict[str, Any] = {"paylink_id": to_object_id(paylink_id, "paylink_id")}
        bounds = date_bounds(start, end)
        if bounds:
            query["date"] = bounds
        return count_documents(self.visits, query)
