"""Command-line interface for running reports against the order store.

Provides subcommands: `main`, `base`, `revenue`, `customers`, `royalty` and
`paylink`. Each command is implemented as a `cmd_*` function that accepts an
argparse namespace and prints the report as JSON, or as a table with
`--table`.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pandas as pd
from pydantic import BaseModel

from billing_reports.aggregate.dashboard import DashboardAggregations
from billing_reports.aggregate.executor import AggregationExecutor
from billing_reports.aggregate.paylink import PaylinkStatAggregator
from billing_reports.aggregate.royalty import RoyaltySummaryCalculator
from billing_reports.cache import MongoCache, ReportCache
from billing_reports.config import Settings, get_settings
from billing_reports.dashboard import DashboardService
from billing_reports.db import get_client, get_db
from billing_reports.errors import ReportError
from billing_reports.frames import chart_frame, royalty_frame
from billing_reports.logging_config import configure_logging
from billing_reports.periods import END_OF_UNIT_OFFSET, PeriodResolver, PeriodToken

log = logging.getLogger(__name__)

PAYLINK_DIMENSIONS = ("total", "country", "referrer", "date", "utm")


@dataclass
class Services:
    dashboard: DashboardService
    royalty: RoyaltySummaryCalculator
    paylink: PaylinkStatAggregator


# --------------------------------------------------
# Helpers
# --------------------------------------------------
def build_services(s: Settings) -> Services:
    """Wire the report services to the configured MongoDB collections."""
    client = get_client(s.mongo_uri, tls=s.mongo_tls)
    db = get_db(client, s.mongo_db)

    orders = AggregationExecutor(db[s.orders_collection])
    store = MongoCache(db[s.cache_collection])
    store.ensure_indexes()

    dashboard = DashboardService(
        PeriodResolver(week_start=s.week_start),
        ReportCache(store),
        DashboardAggregations(orders),
    )
    return Services(
        dashboard=dashboard,
        royalty=RoyaltySummaryCalculator(orders),
        paylink=PaylinkStatAggregator(orders, db[s.paylink_visits_collection]),
    )


def _date(value: str, end_of_day: bool = False) -> datetime:
    """Parse `YYYY-MM-DD` (or a full ISO timestamp) as UTC.

    With `end_of_day`, a bare date means its last millisecond.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if end_of_day and len(value) == 10:
        parsed += timedelta(days=1) - END_OF_UNIT_OFFSET
    return parsed


def _unix(value: str, end_of_day: bool = False) -> int:
    return int(_date(value, end_of_day).timestamp()) if value else 0


def _emit(report: BaseModel, table: pd.DataFrame | None = None) -> None:
    if table is not None:
        print(table.to_string(index=False))
    else:
        print(report.model_dump_json(indent=2))


def _chart_table(chart: Any, as_table: bool) -> pd.DataFrame | None:
    return chart_frame(chart) if as_table else None


# --------------------------------------------------
# DASHBOARDS
# --------------------------------------------------
def cmd_main(args: argparse.Namespace, services: Services) -> None:
    report = services.dashboard.get_main_report(args.merchant_id, args.period)
    _emit(report, _chart_table(report.gross_revenue.chart, args.table))


def cmd_base(args: argparse.Namespace, services: Services) -> None:
    report = services.dashboard.get_base_report(args.merchant_id, args.period)
    table = None
    if args.table:
        table = pd.DataFrame([row.model_dump() for row in report.revenue_by_country.top])
    _emit(report, table)


def cmd_revenue(args: argparse.Namespace, services: Services) -> None:
    report = services.dashboard.get_revenue_dynamics_report(args.merchant_id, args.period)
    _emit(report, _chart_table(report.items, args.table))


def cmd_customers(args: argparse.Namespace, services: Services) -> None:
    if args.customer_id:
        _emit(services.dashboard.get_customer_arpu(args.merchant_id, args.customer_id))
        return
    report = services.dashboard.get_customers_report(args.merchant_id, args.period)
    table = pd.DataFrame([p.model_dump() for p in report.chart]) if args.table else None
    _emit(report, table)


# --------------------------------------------------
# ROYALTY
# --------------------------------------------------
def cmd_royalty(args: argparse.Namespace, services: Services) -> None:
    """Print the royalty summary of a merchant for a payout currency and window.

    Args:
        args: argparse namespace with `merchant_id`, `currency`, `date_from`,
            `date_to`, `rounded`, `exclude_reported`.
    """
    calc = services.royalty
    summarize = calc.summarize_rounded if args.rounded else calc.summarize
    summary = summarize(
        args.merchant_id,
        args.currency,
        _date(args.date_from),
        _date(args.date_to, end_of_day=True),
        args.exclude_reported,
    )
    _emit(summary, royalty_frame(summary) if args.table else None)


# --------------------------------------------------
# PAYLINK
# --------------------------------------------------
def cmd_paylink(args: argparse.Namespace, services: Services) -> None:
    stats = services.paylink
    start, end = _unix(args.date_from), _unix(args.date_to, end_of_day=True)

    if args.by == "total":
        _emit(stats.stat_total(args.paylink_id, args.merchant_id, start, end))
        return

    by_dimension = {
        "country": stats.stat_by_country,
        "referrer": stats.stat_by_referrer,
        "date": stats.stat_by_date,
        "utm": stats.stat_by_utm,
    }
    result = by_dimension[args.by](args.paylink_id, args.merchant_id, start, end)
    table = None
    if args.table:
        table = pd.DataFrame([row.model_dump(exclude={"utm"}) for row in [*result.top, result.total]])
    _emit(result, table)


COMMANDS = {
    "main": cmd_main,
    "base": cmd_base,
    "revenue": cmd_revenue,
    "customers": cmd_customers,
    "royalty": cmd_royalty,
    "paylink": cmd_paylink,
}


# --------------------------------------------------
# CLI
# --------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    """Build and return the top-level argument parser for the CLI.

    Returns:
        Configured argparse.ArgumentParser instance.
    """
    p = argparse.ArgumentParser(prog="billing-reports")
    p.add_argument("--table", action="store_true", help="print a table instead of JSON")
    sub = p.add_subparsers(dest="cmd", required=True)

    periods = [token.value for token in PeriodToken]
    for name in ("main", "base", "revenue", "customers"):
        p_dash = sub.add_parser(name)
        p_dash.add_argument("merchant_id")
        p_dash.add_argument("--period", choices=periods, default=PeriodToken.CURRENT_MONTH.value)
        if name == "customers":
            p_dash.add_argument("--customer-id", default=None)

    p_royalty = sub.add_parser("royalty")
    p_royalty.add_argument("merchant_id")
    p_royalty.add_argument("--currency", required=True)
    p_royalty.add_argument("--from", dest="date_from", required=True)
    p_royalty.add_argument("--to", dest="date_to", required=True)
    p_royalty.add_argument("--rounded", action="store_true")
    p_royalty.add_argument("--exclude-reported", action="store_true")

    p_paylink = sub.add_parser("paylink")
    p_paylink.add_argument("merchant_id")
    p_paylink.add_argument("paylink_id")
    p_paylink.add_argument("--by", choices=PAYLINK_DIMENSIONS, default="total")
    p_paylink.add_argument("--from", dest="date_from", default="")
    p_paylink.add_argument("--to", dest="date_to", default="")

    return p


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse args, configure logging and dispatch commands."""
    args = build_parser().parse_args(argv)
    s = get_settings()
    configure_logging(s.log_path)

    try:
        COMMANDS[args.cmd](args, build_services(s))
    except ReportError as err:
        log.error("%s failed: %s", args.cmd, err)
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
