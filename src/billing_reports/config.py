"""Configuration helpers and Settings container.

This module provides a small `Settings` dataclass and `get_settings` which
reads the MongoDB connection, collection names and reporting options from the
environment (a `.env` file in the project root is loaded first).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv

# Explicitly load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env")

WEEK_STARTS = {"sunday": 6, "monday": 0}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Container for reporting configuration read from the environment.

    Attributes:
        mongo_uri: MongoDB connection URI.
        mongo_db: Target MongoDB database name.
        mongo_tls: Whether to connect with TLS using the certifi CA bundle.
        orders_collection: Collection holding materialized order views.
        paylink_visits_collection: Collection holding paylink visit hits.
        cache_collection: Collection used as the report cache.
        week_start: Python weekday number the reporting week starts on.
        log_path: Optional log file path.
    """
    mongo_uri: str
    mongo_db: str
    mongo_tls: bool
    orders_collection: str
    paylink_visits_collection: str
    cache_collection: str
    week_start: int
    log_path: Path | None


def get_settings() -> Settings:
    """Read environment variables and return a frozen `Settings` object.

    Raises:
        RuntimeError: if `REPORT_WEEK_START` is not `sunday` or `monday`.
    """
    mongo_uri = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    mongo_db = os.getenv("MONGO_DB", "billing")
    mongo_tls = os.getenv("MONGO_TLS", "").strip().lower() in _TRUTHY
    week_start_name = os.getenv("REPORT_WEEK_START", "sunday").strip().lower()
    log_path = os.getenv("REPORT_LOG_PATH", "").strip()

    if week_start_name not in WEEK_STARTS:
        raise RuntimeError(
            "REPORT_WEEK_START must be one of: "
            + ", ".join(sorted(WEEK_STARTS))
            + f" (got {week_start_name!r})."
        )

    return Settings(
        mongo_uri=mongo_uri,
        mongo_db=mongo_db,
        mongo_tls=mongo_tls,
        orders_collection=os.getenv("ORDER_VIEW_COLLECTION", "order_view"),
        paylink_visits_collection=os.getenv("PAYLINK_VISITS_COLLECTION", "paylink_visits"),
        cache_collection=os.getenv("REPORT_CACHE_COLLECTION", "report_cache"),
        week_start=WEEK_STARTS[week_start_name],
        log_path=Path(log_path) if log_path else None,
    )
