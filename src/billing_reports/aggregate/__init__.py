"""Aggregation layer.

This package contains the pipeline definitions and executors that turn the
materialized `order_view` transactions into report shapes: dashboard
reports, royalty summaries and paylink statistics. Everything here is
stateless; caching is applied one level up by the services that call it.
"""
