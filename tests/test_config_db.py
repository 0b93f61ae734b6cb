from __future__ import annotations

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from billing_reports.config import get_settings
from billing_reports.db import aggregate, count_documents, to_object_id
from billing_reports.errors import InvalidReference, StoreQueryFailed

from conftest import MERCHANT_ID, FakeCollection


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MONGO_DB", "REPORT_WEEK_START", "REPORT_LOG_PATH", "ORDER_VIEW_COLLECTION"):
        monkeypatch.delenv(name, raising=False)
    s = get_settings()
    assert s.mongo_db == "billing"
    assert s.orders_collection == "order_view"
    assert s.week_start == 6
    assert s.log_path is None


def test_settings_week_start(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPORT_WEEK_START", "Monday")
    assert get_settings().week_start == 0

    monkeypatch.setenv("REPORT_WEEK_START", "friday")
    with pytest.raises(RuntimeError):
        get_settings()


def test_to_object_id() -> None:
    assert to_object_id(MERCHANT_ID) == ObjectId(MERCHANT_ID)
    with pytest.raises(InvalidReference) as err:
        to_object_id("xyz", "merchant_id")
    assert "merchant_id" in str(err.value)
    assert err.value.code == "rp000002"


def test_store_failures_are_wrapped() -> None:
    collection = FakeCollection()
    collection.error = OperationFailure("unknown operator: $bogus")

    with pytest.raises(StoreQueryFailed) as err:
        aggregate(collection, [{"$bogus": {}}])  # type: ignore[arg-type]
    assert err.value.collection == "order_view"
    assert err.value.pipeline == [{"$bogus": {}}]

    with pytest.raises(StoreQueryFailed):
        count_documents(collection, {})  # type: ignore[arg-type]
