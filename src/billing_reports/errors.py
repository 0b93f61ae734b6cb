"""Error taxonomy for the reporting core.

Every error carries a stable `code` so the surrounding RPC layer can map it to
a response message without parsing text.
"""

from __future__ import annotations

from typing import Any


class ReportError(Exception):
    """Base class for reporting errors."""

    code = "rp000000"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidPeriod(ReportError):
    """Unrecognized dashboard period token."""

    code = "rp000001"


class InvalidReference(ReportError):
    """Malformed merchant / paylink / customer identifier."""

    code = "rp000002"


class StoreQueryFailed(ReportError):
    """The document store failed to execute a query or aggregation."""

    code = "rp000003"

    def __init__(self, message: str, collection: str, pipeline: Any = None) -> None:
        super().__init__(message)
        self.collection = collection
        self.pipeline = pipeline


class CacheFailed(ReportError):
    """A get/set/delete against the report cache failed."""

    code = "rp000004"

    def __init__(self, message: str, key: str, operation: str) -> None:
        super().__init__(message)
        self.key = key
        self.operation = operation


class DecodeFailed(ReportError):
    """An aggregation result did not match the expected report shape."""

    code = "rp000005"

    def __init__(self, message: str, collection: str, pipeline: Any = None) -> None:
        super().__init__(message)
        self.collection = collection
        self.pipeline = pipeline


class StatDataInconsistent(ReportError):
    """An ungrouped paylink summary returned more than one row."""

    code = "pl000009"
