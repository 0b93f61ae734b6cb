"""Royalty summary for merchant payout reports.

The store only filters and projects the raw order fields; flattening into
line items, the correction factor and both groupings run in pandas over the
same corrected frame, so the itemized rows always add up to the total row.

Expectations:
- Input: `order_view` documents with `items`, `amount_before_vat`,
  `country_code`, `merchant_payout_currency`, `type` and the order-level
  money sub-documents listed in `MONEY_FIELDS`
- Outputs: `RoyaltySummary` with rows sorted by `product`, then `region`
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import pandas as pd

from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.db import to_object_id
from billing_reports.errors import DecodeFailed
from billing_reports.money import round_amount, to_precise
from billing_reports.models import RoyaltySummary, RoyaltySummaryItem
from billing_reports.pipeline import (
    MatchCriteria,
    Pipeline,
    english_names,
    group,
    if_null,
    match,
    pipeline,
    project_fields,
)

log = logging.getLogger(__name__)

ORDERS_COLLECTION = "order_view"
ROYALTY_STATUSES = ("processed", "refunded", "chargeback")

# record column -> order_view money sub-document
MONEY_FIELDS = {
    "purchase_gross_revenue": "gross_revenue",
    "refund_gross_revenue": "refund_gross_revenue",
    "purchase_tax_fee_total": "tax_fee_total",
    "refund_tax_fee_total": "refund_tax_fee_total",
    "purchase_fees_total": "fees_total",
    "refund_fees_total": "refund_fees_total",
    "net_revenue": "net_revenue",
    "refund_reverse_revenue": "refund_reverse_revenue",
}

GROUP_KEYS = ["product", "region"]

SUMMED = {
    "gross_sales_amount": "purchase_gross_revenue",
    "gross_returns_amount": "refund_gross_revenue",
    "purchase_fees": "purchase_fees_total",
    "refund_fees": "refund_fees_total",
    "purchase_tax": "purchase_tax_fee_total",
    "refund_tax": "refund_tax_fee_total",
    "net_revenue_total": "net_revenue",
    "refund_reverse_revenue_total": "refund_reverse_revenue",
}

COUNT_COLUMNS = ("total_transactions", "sales_count", "returns_count")
AMOUNT_COLUMNS = (
    *SUMMED,
    "gross_total_amount",
    "total_fees",
    "total_vat",
    "payout_amount",
)


def royalty_criteria(
    merchant_id: str,
    currency: str,
    start: datetime,
    end: datetime,
    exclude_reported: bool = False,
) -> MatchCriteria:
    """Production transactions of one merchant and payout currency in a window."""
    criteria = MatchCriteria({
        "merchant_id": to_object_id(merchant_id, "merchant_id"),
        "merchant_payout_currency": currency,
        "pm_order_close_date": {"$gte": start, "$lte": end},
        "status": {"$in": list(ROYALTY_STATUSES)},
        "is_production": True,
    })
    if exclude_reported:
        criteria = criteria.with_(royalty_report_id="")
    return criteria


def royalty_records_pipeline(criteria: MatchCriteria, rounded: bool = False) -> Pipeline:
    """Order-level records with the fields the summary is computed from.

    The rounded variant reads the amounts the payment system already rounded
    to the payout currency.
    """
    suffix = "amount_rounded" if rounded else "amount"
    money = {column: f"${source}.{suffix}" for column, source in MONEY_FIELDS.items()}
    return pipeline(
        match(criteria),
        project_fields({
            "names": english_names(),
            "items": if_null("$items", []),
            "region": "$country_code",
            "type": 1,
            "amount_before_vat": 1,
            "currency": "$merchant_payout_currency",
            **money,
        }),
    )


def merchants_pipeline(statuses: list[str], start: datetime, end: datetime) -> Pipeline:
    return pipeline(
        match({
            "pm_order_close_date": {"$gte": start, "$lte": end},
            "status": {"$in": list(statuses)},
            "is_production": True,
        }),
        project_fields({"project.merchant_id": True}),
        group("$project.merchant_id"),
    )


# =========================================================
# FRAME TRANSFORMS
# =========================================================

def _first_name(names: Any) -> str:
    if isinstance(names, list) and names:
        return str(names[0].get("value") or "")
    return ""


def flatten_records(docs: list[dict[str, Any]], collection: str = ORDERS_COLLECTION) -> pd.DataFrame:
    """One row per purchased line item, or one row for an order without items.

    Adds `product` (the item name, or the project's first English name for
    the whole-order row) and `correction` (`item.amount / amount_before_vat`,
    or 1 for the whole-order row).

    Raises:
        DecodeFailed: if an order with line items has a zero `amount_before_vat`.
    """
    frame = pd.DataFrame(docs)
    for column in (*MONEY_FIELDS, "amount_before_vat"):
        if column not in frame:
            frame[column] = 0.0
    for column in ("region", "currency", "type"):
        if column not in frame:
            frame[column] = ""
    if "names" not in frame:
        frame["names"] = None
    if "items" not in frame:
        frame["items"] = None

    frame["items"] = frame["items"].apply(lambda items: items if isinstance(items, list) and items else [None])
    frame = frame.explode("items", ignore_index=True)

    whole_order = frame["items"].isna()
    order_name = frame["names"].apply(_first_name)
    item_name = frame["items"].apply(lambda item: item.get("name") if isinstance(item, dict) else None)
    item_amount = frame["items"].apply(lambda item: item.get("amount") if isinstance(item, dict) else None)

    before_vat = pd.to_numeric(frame["amount_before_vat"], errors="coerce").fillna(0.0)
    unsplittable = ~whole_order & (before_vat == 0)
    if unsplittable.any():
        ids = frame.loc[unsplittable, "_id"].astype(str).unique() if "_id" in frame else []
        raise DecodeFailed(
            f"order has line items but zero amount_before_vat: {', '.join(ids)}", collection
        )
    ratio = pd.to_numeric(item_amount, errors="coerce").fillna(0.0) / before_vat.where(before_vat != 0)

    frame["product"] = item_name.where(~whole_order, order_name).fillna("").astype(str)
    frame["correction"] = ratio.where(~whole_order, 1.0).fillna(0.0)
    frame["region"] = frame["region"].fillna("").astype(str)
    frame["currency"] = frame["currency"].fillna("").astype(str)
    return frame.drop(columns=["items", "names"])


def correct_amounts(frame: pd.DataFrame, rounded: bool = False) -> pd.DataFrame:
    """Scale every money column by `correction`; optionally round each record."""
    out = frame.copy()
    for column in MONEY_FIELDS:
        amount = pd.to_numeric(out[column], errors="coerce").fillna(0.0) * out["correction"]
        out[column] = amount.map(round_amount) if rounded else amount
    return out


def _with_derived(grouped: pd.DataFrame) -> pd.DataFrame:
    out = grouped.copy()
    out["returns_count"] = out["total_transactions"] - out["sales_count"]
    out["gross_total_amount"] = out["gross_sales_amount"] - out["gross_returns_amount"]
    out["total_fees"] = out["purchase_fees"] + out["refund_fees"]
    out["total_vat"] = out["purchase_tax"] - out["refund_tax"]
    out["payout_amount"] = out["net_revenue_total"] - out["refund_reverse_revenue_total"]
    return out


def group_records(records: pd.DataFrame, keys: list[str]) -> pd.DataFrame:
    """Sum corrected records per `keys`; an empty `keys` list yields the total row."""
    x = records.assign(is_sale=(records["type"] == "order").astype(int))
    if not keys:
        x = x.assign(_total=0)
    grouped = (
        x.groupby(keys or ["_total"], sort=True, dropna=False)
        .agg(
            currency=("currency", "first"),
            total_transactions=("correction", "size"),
            sales_count=("is_sale", "sum"),
            **{name: (column, "sum") for name, column in SUMMED.items()},
        )
        .reset_index()
    )
    if not keys:
        grouped = grouped.drop(columns=["_total"]).assign(product="", region="")
    return _with_derived(grouped)


def _to_item(row: dict[str, Any]) -> RoyaltySummaryItem:
    values: dict[str, Any] = {
        "product": row.get("product"),
        "region": row.get("region"),
        "currency": row.get("currency"),
    }
    values.update({column: int(row[column]) for column in COUNT_COLUMNS})
    values.update({column: to_precise(row[column]) for column in AMOUNT_COLUMNS})
    return RoyaltySummaryItem.model_validate(values)


def summarize_records(
    docs: list[dict[str, Any]],
    rounded: bool = False,
    collection: str = ORDERS_COLLECTION,
) -> RoyaltySummary:
    """Build the royalty summary from order-level records."""
    if not docs:
        return RoyaltySummary()

    order_ids = list(dict.fromkeys(str(doc["_id"]) for doc in docs if doc.get("_id") is not None))
    records = correct_amounts(flatten_records(docs, collection), rounded=rounded)

    items = group_records(records, GROUP_KEYS).sort_values(GROUP_KEYS)
    total = group_records(records, [])

    return RoyaltySummary(
        items=[_to_item(row) for row in items.to_dict("records")],
        total=_to_item(total.to_dict("records")[0]),
        order_ids=order_ids,
    )


class RoyaltySummaryCalculator:
    """Royalty summaries and royalty-eligible merchants for a window."""

    def __init__(self, executor: AggregationExecutor) -> None:
        self.executor = executor

    def summarize(
        self,
        merchant_id: str,
        currency: str,
        start: datetime,
        end: datetime,
        exclude_reported: bool = False,
    ) -> RoyaltySummary:
        """Return per product/region rows, the total row and the matched order ids.

        Args:
            merchant_id: Merchant hex id.
            currency: Merchant payout currency.
            start: Inclusive window start.
            end: Inclusive window end.
            exclude_reported: Skip transactions already attached to a royalty report.

        Raises:
            InvalidReference: if `merchant_id` is not a valid id.
            StoreQueryFailed: on store failures.
            DecodeFailed: if an itemized order cannot be split by its pre-VAT amount.
        """
        return self._summarize(merchant_id, currency, start, end, exclude_reported, rounded=False)

    def summarize_rounded(
        self,
        merchant_id: str,
        currency: str,
        start: datetime,
        end: datetime,
        exclude_reported: bool = False,
    ) -> RoyaltySummary:
        """Like `summarize`, but from rounded amounts, rounding each record before summing."""
        return self._summarize(merchant_id, currency, start, end, exclude_reported, rounded=True)

    def _summarize(
        self,
        merchant_id: str,
        currency: str,
        start: datetime,
        end: datetime,
        exclude_reported: bool,
        rounded: bool,
    ) -> RoyaltySummary:
        criteria = royalty_criteria(merchant_id, currency, start, end, exclude_reported)
        docs = self.executor.documents(royalty_records_pipeline(criteria, rounded=rounded))
        summary = summarize_records(docs, rounded=rounded, collection=self.executor.collection_name)
        log.info(
            "Royalty summary for merchant %s (%s): %d orders, %d rows",
            merchant_id,
            currency,
            len(summary.order_ids),
            len(summary.items),
        )
        return summary

    def merchants_with_royalty(
        self,
        statuses: list[str],
        start: datetime,
        end: datetime,
    ) -> list[str]:
        """Distinct merchant ids with production transactions in the window."""
        docs = self.executor.documents(merchants_pipeline(statuses, start, end))
        return [str(doc["_id"]) for doc in docs if doc.get("_id") is not None]
