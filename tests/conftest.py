from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.errors import CacheFailed

MERCHANT_ID = "5f0c6c5f9b1e8a0001000001"
PAYLINK_ID = "5f0c6c5f9b1e8a00010000aa"
NOW = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self.docs = docs

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def __iter__(self):
        return iter(self.docs)


class FakeCollection:
    """In-memory stand-in for a PyMongo collection.

    `aggregate` records each pipeline and answers with the next queued list
    of documents (an empty result once the queue is drained).
    """

    def __init__(self, name: str = "order_view", results: list[list[dict[str, Any]]] | None = None) -> None:
        self.name = name
        self.results = list(results or [])
        self.pipelines: list[list[dict[str, Any]]] = []
        self.queries: list[dict[str, Any]] = []
        self.docs: dict[Any, dict[str, Any]] = {}
        self.indexes: list[tuple[Any, dict[str, Any]]] = []
        self.count = 0
        self.error: Exception | None = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def aggregate(self, pipeline: list[dict[str, Any]]) -> FakeCursor:
        self.pipelines.append(pipeline)
        self._check()
        return FakeCursor(self.results.pop(0) if self.results else [])

    def count_documents(self, query: dict[str, Any]) -> int:
        self.queries.append(query)
        self._check()
        return self.count

    def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        self._check()
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc is not None else None

    def replace_one(self, query: dict[str, Any], doc: dict[str, Any], upsert: bool = False) -> None:
        self._check()
        self.docs[query["_id"]] = {"_id": query["_id"], **doc}

    def delete_one(self, query: dict[str, Any]) -> None:
        self._check()
        self.docs.pop(query["_id"], None)

    def create_index(self, keys: Any, **options: Any) -> None:
        self._check()
        self.indexes.append((keys, options))


class FakeCache:
    """Dict-backed `Cache` that records every call."""

    def __init__(self, fail_get: bool = False, fail_set: bool = False) -> None:
        self.store: dict[str, dict[str, Any]] = {}
        self.gets: list[str] = []
        self.sets: list[tuple[str, Any]] = []
        self.fail_get = fail_get
        self.fail_set = fail_set

    def get(self, key: str) -> dict[str, Any] | None:
        self.gets.append(key)
        if self.fail_get:
            raise CacheFailed("connection refused", key=key, operation="GET")
        return self.store.get(key)

    def set(self, key: str, value: dict[str, Any], lifetime: Any) -> None:
        if self.fail_set:
            raise CacheFailed("connection refused", key=key, operation="SET")
        self.sets.append((key, lifetime))
        self.store[key] = value

    def delete(self, key: str) -> None:
        self.store.pop(key, None)


@pytest.fixture
def orders() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
def executor(orders: FakeCollection) -> AggregationExecutor:
    return AggregationExecutor(orders)  # type: ignore[arg-type]


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()
