"""billing_reports package.

Contains the reporting core of the merchant billing platform: resolution of
relative dashboard periods into query windows, cache-aside execution of
aggregation pipelines against the `order_view` transaction collection,
royalty summaries redistributed across order line items, and paylink
statistics.

Architecture:
- PeriodResolver → ReportCache → aggregation (dashboard / royalty / paylink)
- MongoDB holds both the transaction store and the report cache
- Pydantic models describe every decoded report shape
- pandas is used for in-process grouping and chart presentation
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
