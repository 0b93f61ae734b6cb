"""MongoDB helpers and aggregation utility.

Centralizes creation of Mongo clients, identifier parsing and a single
`aggregate` entry point used by every report so store failures are logged
and wrapped the same way.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import certifi
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from billing_reports.errors import InvalidReference, StoreQueryFailed

log = logging.getLogger(__name__)


def get_client(uri: str, tls: bool = False) -> MongoClient:
    """Return a configured PyMongo MongoClient for the provided URI.

    Args:
        uri: MongoDB connection URI.
        tls: Connect with TLS using the certifi CA bundle.

    Returns:
        Configured MongoClient instance.
    """
    options: dict[str, Any] = {
        "serverSelectionTimeoutMS": 30000,
        "socketTimeoutMS": 30000,
        "connectTimeoutMS": 30000,
        "tz_aware": True,
    }
    if tls:
        options.update(tls=True, tlsCAFile=certifi.where())
    return MongoClient(uri, **options)


def get_db(
    client: MongoClient[dict[str, Any]],
    db_name: str,
) -> Database[dict[str, Any]]:
    """Return the named Database instance from a MongoClient."""
    return client[db_name]


def to_object_id(value: str | ObjectId, field: str = "id") -> ObjectId:
    """Convert a hex identifier into an ObjectId.

    Raises:
        InvalidReference: if `value` is not a valid 24-character hex id.
    """
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as err:
        raise InvalidReference(f"invalid {field}: {value!r}") from err


def aggregate(
    collection: Collection[dict[str, Any]],
    pipeline: Sequence[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Run an aggregation and materialize every resulting document.

    Args:
        collection: Source PyMongo collection.
        pipeline: Ordered list of aggregation stages.

    Returns:
        List of result documents (empty when nothing matched).

    Raises:
        StoreQueryFailed: on any driver or server error.
    """
    stages = list(pipeline)
    try:
        with collection.aggregate(stages) as cursor:
            return list(cursor)
    except PyMongoError as err:
        log.error(
            "Aggregation failed on %s: %s | pipeline=%s",
            collection.name,
            err,
            stages,
        )
        raise StoreQueryFailed(str(err), collection.name, stages) from err


def aggregate_one(
    collection: Collection[dict[str, Any]],
    pipeline: Sequence[dict[str, Any]],
) -> dict[str, Any] | None:
    """Run an aggregation expected to yield at most one document."""
    docs = aggregate(collection, pipeline)
    return docs[0] if docs else None


def count_documents(
    collection: Collection[dict[str, Any]],
    query: dict[str, Any],
) -> int:
    """Count documents matching `query`, wrapping driver errors."""
    try:
        return int(collection.count_documents(query))
    except PyMongoError as err:
        log.error("Count failed on %s: %s | query=%s", collection.name, err, query)
        raise StoreQueryFailed(str(err), collection.name, query) from err
