from __future__ import annotations

import pytest
from bson import ObjectId
from pydantic import ValidationError

from billing_reports.models import (
    REPORT_RESULT_ADAPTER,
    CustomerMetricsReport,
    RevenueByCountryReport,
    RoyaltySummaryItem,
    SourcesReport,
    StatCommon,
)


def test_report_result_dispatches_on_kind() -> None:
    report = REPORT_RESULT_ADAPTER.validate_python({"kind": "sources", "total_current": 3})
    assert isinstance(report, SourcesReport)
    assert report.total_current == 3


def test_report_result_rejects_unknown_kind() -> None:
    with pytest.raises(ValidationError):
        REPORT_RESULT_ADAPTER.validate_python({"kind": "weather"})


def test_report_survives_json_round_trip() -> None:
    report = RevenueByCountryReport.model_validate(
        {"currency": "EUR", "top": [{"_id": "DE", "amount": 5.5}], "total": 5.5}
    )
    restored = REPORT_RESULT_ADAPTER.validate_python(report.model_dump(mode="json"))
    assert restored == report


def test_nulls_fall_back_to_defaults() -> None:
    item = RoyaltySummaryItem.model_validate({"product": None, "currency": None, "payout_amount": None})
    assert item.product == ""
    assert item.currency == ""
    assert item.payout_amount == 0.0


def test_customer_ids_skip_missing_customers() -> None:
    report = CustomerMetricsReport.model_validate({"customer_ids": ["a", None, 7]})
    assert report.customer_ids == ["a", "7"]


def test_stat_id_is_text() -> None:
    oid = ObjectId()
    assert StatCommon.model_validate({"_id": oid}).id == str(oid)


def test_reports_are_read_only() -> None:
    report = SourcesReport(total=3)
    with pytest.raises(ValidationError):
        report.total_current = 4  # type: ignore[misc]

    updated = report.model_copy(update={"total_previous": 2})
    assert (report.total_previous, updated.total_previous) == (0, 2)
