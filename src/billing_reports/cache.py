"""Report cache: MongoDB-backed key/value store plus the cache-aside wrapper.

`MongoCache` keeps entries in a collection with a TTL index on `expire_at`.
MongoDB's TTL monitor only sweeps once a minute, so reads also check the
expiry themselves.

`ReportCache.execute` is the single cache-aside implementation used by every
report: zero lifetime bypasses the cache, read failures count as a miss, and
write failures are raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel, ValidationError
from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from billing_reports.errors import CacheFailed
from billing_reports.models import REPORT_RESULT_ADAPTER

log = logging.getLogger(__name__)

# Report cache key masks; the placeholder is the md5 digest of the match filter.
DASHBOARD_MAIN_GROSS_REVENUE_AND_VAT = "dashboard:main:gross_revenue_and_vat:%s"
DASHBOARD_MAIN_TOTAL_TRANSACTIONS_AND_ARPU = "dashboard:main:total_transactions_and_arpu:%s"
DASHBOARD_REVENUE_DYNAMIC = "dashboard:revenue_dynamic:%s"
DASHBOARD_BASE_REVENUE_BY_COUNTRY = "dashboard:base:revenue_by_country:%s"
DASHBOARD_BASE_SALES_TODAY = "dashboard:base:sales_today:%s"
DASHBOARD_BASE_SOURCES = "dashboard:base:sources:%s"
DASHBOARD_CUSTOMERS = "dashboard:customers:%s"

M = TypeVar("M", bound=BaseModel)


class Cache(Protocol):
    """Key/value cache the reporting engine stores report snapshots in."""

    def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored value, or None on a miss."""

    def set(self, key: str, value: dict[str, Any], lifetime: timedelta) -> None:
        """Store `value` for `lifetime`."""

    def delete(self, key: str) -> None:
        """Remove `key` if present."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


class MongoCache:
    """Cache stored in a MongoDB collection with a TTL index."""

    def __init__(
        self,
        collection: Collection[dict[str, Any]],
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.collection = collection
        self.clock = clock

    def ensure_indexes(self) -> None:
        """Create the TTL index that lets MongoDB drop expired entries."""
        try:
            self.collection.create_index(
                [("expire_at", ASCENDING)],
                expireAfterSeconds=0,
                name="expire_at_ttl",
            )
        except PyMongoError as err:
            raise CacheFailed(str(err), key="*", operation="CREATE_INDEX") from err

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as err:
            raise CacheFailed(str(err), key=key, operation="GET") from err

        if doc is None:
            return None
        expire_at = doc.get("expire_at")
        if expire_at is not None and _aware(expire_at) <= self.clock():
            return None
        return doc.get("value")

    def set(self, key: str, value: dict[str, Any], lifetime: timedelta) -> None:
        doc: dict[str, Any] = {"value": value}
        if lifetime > timedelta(0):
            doc["expire_at"] = self.clock() + lifetime
        try:
            self.collection.replace_one({"_id": key}, doc, upsert=True)
        except PyMongoError as err:
            raise CacheFailed(str(err), key=key, operation="SET") from err

    def delete(self, key: str) -> None:
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as err:
            raise CacheFailed(str(err), key=key, operation="DELETE") from err


class ReportCache:
    """Generic get-or-compute wrapper around a `Cache`."""

    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    def execute(
        self,
        key: str,
        lifetime: timedelta,
        compute: Callable[[], M],
        model: type[M],
    ) -> M:
        """Return the cached report for `key` or compute and store it.

        Args:
            key: Cache key; ignored when `lifetime` is zero.
            lifetime: How long the computed value stays valid.
            compute: Runs the aggregation on a miss.
            model: Report model the cached payload is restored into.

        Raises:
            CacheFailed: if storing the computed value fails.
        """
        if lifetime <= timedelta(0):
            return compute()

        cached = self._read(key, model)
        if cached is not None:
            return cached

        result = compute()
        self.cache.set(key, result.model_dump(mode="json"), lifetime)
        log.debug("Cached %s for %s", key, lifetime)
        return result

    def _read(self, key: str, model: type[M]) -> M | None:
        try:
            payload = self.cache.get(key)
        except CacheFailed as err:
            log.warning("Cache read failed, recomputing %s: %s", key, err)
            return None

        if payload is None:
            return None
        try:
            report = REPORT_RESULT_ADAPTER.validate_python(payload)
        except ValidationError as err:
            log.warning("Discarding undecodable cache entry %s: %s", key, err)
            return None

        if not isinstance(report, model):
            log.warning("Discarding cache entry %s holding a %s report", key, report.kind)
            return None
        return report
