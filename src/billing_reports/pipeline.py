"""Aggregation pipeline building blocks.

`MatchCriteria` is an immutable filter value: every refinement returns a new
criteria object, so a criteria shared between a current-period and a
previous-period query can never be altered by either of them.

`Pipeline` is an immutable sequence of stages built from the typed stage
constructors below. Near-duplicate report pipelines share the expression
helpers at the bottom of the module.
"""

from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Sequence

from bson import json_util

Stage = dict[str, Any]

CLOSE_DATE = "$pm_order_close_date"


@dataclass(frozen=True)
class MatchCriteria:
    """Read-only filter over the transaction store."""

    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(copy.deepcopy(dict(self.fields))))

    def with_(self, **fields: Any) -> "MatchCriteria":
        """Return a new criteria with `fields` added or replaced."""
        return MatchCriteria({**self.fields, **fields})

    def with_field(self, name: str, value: Any) -> "MatchCriteria":
        """Like `with_` for dotted field names (``user.external_id``)."""
        return MatchCriteria({**self.fields, name: value})

    def without(self, *names: str) -> "MatchCriteria":
        """Return a new criteria with `names` removed."""
        return MatchCriteria({k: v for k, v in self.fields.items() if k not in names})

    def to_filter(self) -> dict[str, Any]:
        """Return a fresh, caller-owned filter dict, nested operators included."""
        return copy.deepcopy(dict(self.fields))

    def digest(self) -> str:
        """Stable md5 hex digest of the canonical filter serialization."""
        payload = json_util.dumps(self.to_filter(), sort_keys=True)
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __getitem__(self, name: str) -> Any:
        return copy.deepcopy(self.fields[name])


@dataclass(frozen=True)
class Pipeline:
    """Ordered, immutable list of aggregation stages."""

    stages: tuple[Stage, ...] = ()

    def then(self, *stages: "Stage | Pipeline") -> "Pipeline":
        out = list(self.stages)
        for stage in stages:
            if isinstance(stage, Pipeline):
                out.extend(stage.stages)
            else:
                out.append(stage)
        return Pipeline(tuple(out))

    def __add__(self, other: "Pipeline | Sequence[Stage]") -> "Pipeline":
        if isinstance(other, Pipeline):
            return Pipeline(self.stages + other.stages)
        return Pipeline(self.stages + tuple(other))

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def to_list(self) -> list[Stage]:
        return list(self.stages)


def pipeline(*stages: "Stage | Pipeline") -> Pipeline:
    return Pipeline().then(*stages)


# --------------------------------------------------
# Stage constructors
# --------------------------------------------------
def match(criteria: "MatchCriteria | Mapping[str, Any]") -> Stage:
    if isinstance(criteria, MatchCriteria):
        return {"$match": criteria.to_filter()}
    return {"$match": dict(criteria)}


def project(**fields: Any) -> Stage:
    return {"$project": fields}


def project_fields(fields: Mapping[str, Any]) -> Stage:
    """`project` for field names that are not Python identifiers."""
    return {"$project": dict(fields)}


def group(key: Any, **accumulators: Any) -> Stage:
    return {"$group": {"_id": key, **accumulators}}


def add_fields(**fields: Any) -> Stage:
    return {"$addFields": fields}


def facet(**branches: "Pipeline | Sequence[Stage]") -> Stage:
    return {
        "$facet": {
            name: branch.to_list() if isinstance(branch, Pipeline) else list(branch)
            for name, branch in branches.items()
        }
    }


def sort(*keys: tuple[str, int]) -> Stage:
    return {"$sort": dict(keys)}


def limit(n: int) -> Stage:
    return {"$limit": int(n)}


def unwind(path: str) -> Stage:
    return {"$unwind": path}


def count(field_name: str) -> Stage:
    return {"$count": field_name}


# --------------------------------------------------
# Expression helpers
# --------------------------------------------------
def total(accumulator: Any) -> dict[str, Any]:
    """`$sum` accumulator."""
    return {"$sum": accumulator}


def first(expression: Any) -> dict[str, Any]:
    return {"$first": expression}


def first_of(array_field: str) -> dict[str, Any]:
    """Element 0 of a faceted array, e.g. ``$main.gross_revenue``."""
    return {"$arrayElemAt": [array_field, 0]}


def if_null(expression: Any, fallback: Any) -> dict[str, Any]:
    return {"$ifNull": [expression, fallback]}


def close_date_label() -> dict[str, Any]:
    """Chart label: the last close timestamp (epoch ms) seen in a bucket."""
    return {"$last": {"$toLong": CLOSE_DATE}}


def count_if_order() -> dict[str, Any]:
    """Counts sales (order-typed rows) as opposed to refunds."""
    return {"$sum": {"$cond": [{"$eq": ["$type", "order"]}, 1, 0]}}


def english_names() -> dict[str, Any]:
    """Localized project names filtered down to the English entries."""
    return {
        "$filter": {
            "input": "$project.name",
            "as": "name",
            "cond": {"$eq": ["$$name.lang", "en"]},
        }
    }


def items_or_placeholder() -> dict[str, Any]:
    """Line items, or a single empty-string placeholder for item-less orders."""
    return {"$cond": [{"$ne": [if_null("$items", []), []]}, "$items", [""]]}


def bucket_fields() -> dict[str, Any]:
    """Calendar parts of the close date every chart can group by."""
    return {
        "hour": {"$hour": CLOSE_DATE},
        "day": {"$dayOfMonth": CLOSE_DATE},
        "week": {"$week": CLOSE_DATE},
        "month": {"$month": CLOSE_DATE},
        "pm_order_close_date": CLOSE_DATE,
    }


def period_in_day() -> dict[str, Any]:
    """``"<day-of-month> <00-07|08-15|16-23>"`` from projected ``day``/``hour``."""
    part = {
        "$cond": [
            {"$lte": ["$hour", 7]},
            "00-07",
            {"$cond": [{"$lte": ["$hour", 15]}, "08-15", "16-23"]},
        ]
    }
    return {"$concat": [{"$toString": "$day"}, " ", part]}


def carry(*names: str) -> dict[str, str]:
    """Projection entries that pass fields through unchanged."""
    return {name: f"${name}" for name in names}


BUCKET_NAMES = ("hour", "day", "week", "month", "pm_order_close_date")
