from __future__ import annotations

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from billing_reports.pipeline import (
    MatchCriteria,
    facet,
    group,
    match,
    period_in_day,
    pipeline,
    sort,
    total,
)

START = datetime(2024, 6, 1, tzinfo=timezone.utc)
END = datetime(2024, 6, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)


def _criteria(merchant: str = "5f0c6c5f9b1e8a0001000001") -> MatchCriteria:
    return MatchCriteria({
        "merchant_id": ObjectId(merchant),
        "status": "processed",
        "pm_order_close_date": {"$gte": START, "$lte": END},
    })


def test_digest_ignores_key_order() -> None:
    a = _criteria()
    b = MatchCriteria(dict(reversed(list(a.fields.items()))))
    assert a.digest() == b.digest()
    assert len(a.digest()) == 32


def test_digest_differs_per_merchant_and_window() -> None:
    a = _criteria()
    assert a.digest() != _criteria("5f0c6c5f9b1e8a0001000002").digest()
    assert a.digest() != a.with_(pm_order_close_date={"$gte": START}).digest()


def test_refinements_leave_base_untouched() -> None:
    base = _criteria()
    narrowed = base.without("status").with_field("user.external_id", "c-1")

    assert "status" in base
    assert "status" not in narrowed
    assert narrowed["user.external_id"] == "c-1"
    assert "user.external_id" not in base


def test_fields_are_read_only() -> None:
    with pytest.raises(TypeError):
        _criteria().fields["status"] = "refunded"  # type: ignore[index]


def test_filter_copy_is_caller_owned() -> None:
    base = _criteria()
    stage = match(base)
    stage["$match"].pop("status")
    assert "status" in base


def test_nested_operators_are_not_shared() -> None:
    base = _criteria()
    digest = base.digest()
    narrowed = base.without("status")

    stage = match(base)
    stage["$match"]["pm_order_close_date"]["$lte"] = START
    base["pm_order_close_date"]["$gte"] = END
    narrowed.to_filter()["pm_order_close_date"].pop("$gte")

    assert base.to_filter()["pm_order_close_date"] == {"$gte": START, "$lte": END}
    assert narrowed["pm_order_close_date"] == {"$gte": START, "$lte": END}
    assert base.digest() == digest


def test_caller_dict_changes_do_not_leak_in() -> None:
    window = {"$gte": START}
    criteria = MatchCriteria({"pm_order_close_date": window})
    window["$lte"] = END
    assert criteria["pm_order_close_date"] == {"$gte": START}


def test_pipeline_composition_keeps_stage_order() -> None:
    chart = pipeline(group("$day", value=total(1)), sort(("_id", 1)))
    pipe = pipeline(match({"a": 1}), facet(chart=chart))

    stages = pipe.to_list()
    assert list(stages[0]) == ["$match"]
    assert stages[1]["$facet"]["chart"] == [
        {"$group": {"_id": "$day", "value": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]
    assert len(pipe + [sort(("x", -1))]) == 3


def test_period_in_day_splits_day_in_three() -> None:
    expr = period_in_day()
    part = expr["$concat"][2]["$cond"]
    assert part[1] == "00-07"
    assert part[2]["$cond"][1:] == ["08-15", "16-23"]
