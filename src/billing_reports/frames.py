"""pandas views of report results for tables and notebooks."""

from __future__ import annotations

from typing import Sequence

import pandas as pd
from pydantic import BaseModel

from billing_reports.models import ChartItem, CustomerDay, RoyaltySummary
from billing_reports.periods import ReportWindow


def chart_frame(chart: Sequence[BaseModel]) -> pd.DataFrame:
    """Return chart points as a DataFrame with a UTC `label` timestamp column.

    Args:
        chart: Chart items whose `label` is an epoch-millisecond timestamp.

    Returns:
        DataFrame with `label` plus the item's value column(s).
    """
    frame = pd.DataFrame([point.model_dump() for point in chart])
    if frame.empty:
        return pd.DataFrame({"label": pd.Series(dtype="datetime64[ns, UTC]")})
    frame["label"] = pd.to_datetime(frame["label"], unit="ms", utc=True)
    return frame


def royalty_frame(summary: RoyaltySummary) -> pd.DataFrame:
    """Tabulate royalty rows followed by the total row (`row == "total"`)."""
    rows = [{"row": "item", **item.model_dump()} for item in summary.items]
    rows.append({"row": "total", **summary.total.model_dump()})
    return pd.DataFrame(rows)


def fill_daily_chart(days: Sequence[CustomerDay], window: ReportWindow) -> list[ChartItem]:
    """One chart point per calendar day of `window`, labelled 1..N.

    Days without any customer carry 0.
    """
    counts = pd.Series(
        {day.date: day.count for day in days},
        dtype="int64",
    )
    dates = pd.date_range(window.start.date(), periods=window.days, freq="D")
    filled = counts.reindex(dates.strftime("%Y-%m-%d"), fill_value=0)
    return [
        ChartItem(label=position, value=int(value))
        for position, value in enumerate(filled.tolist(), start=1)
    ]
