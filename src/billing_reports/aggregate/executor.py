"""Runs aggregation pipelines and decodes their output into report models.

Aggregations that match nothing return no document; the executor turns that
into the zero-valued report shape so callers never see `None`.
"""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from pymongo.collection import Collection

from billing_reports.db import aggregate
from billing_reports.errors import DecodeFailed
from billing_reports.pipeline import Pipeline

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class AggregationExecutor:
    """Executes pipelines against one collection of the transaction store."""

    def __init__(self, collection: Collection[dict[str, Any]]) -> None:
        self.collection = collection

    @property
    def collection_name(self) -> str:
        return self.collection.name

    def documents(self, pipeline: Pipeline) -> list[dict[str, Any]]:
        """Run `pipeline` and return the raw documents."""
        return aggregate(self.collection, pipeline.to_list())

    def run(self, pipeline: Pipeline, shape: type[M]) -> M:
        """Run a single-document pipeline and decode it into `shape`.

        Returns:
            The decoded document, or `shape()` when nothing matched.

        Raises:
            StoreQueryFailed: on store failures.
            DecodeFailed: if the document does not fit `shape`.
        """
        docs = self.documents(pipeline)
        if not docs:
            return shape()
        return self.decode(docs[0], shape, pipeline)

    def run_many(self, pipeline: Pipeline, shape: type[M]) -> list[M]:
        """Run a pipeline and decode every resulting document into `shape`."""
        return [self.decode(doc, shape, pipeline) for doc in self.documents(pipeline)]

    def decode(self, doc: dict[str, Any], shape: type[M], pipeline: Pipeline) -> M:
        try:
            return shape.model_validate(doc)
        except ValidationError as err:
            log.error(
                "Unable to decode %s from %s: %s | pipeline=%s",
                shape.__name__,
                self.collection_name,
                err,
                pipeline.to_list(),
            )
            raise DecodeFailed(str(err), self.collection_name, pipeline.to_list()) from err
