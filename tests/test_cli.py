from __future__ import annotations

import pytest

from billing_reports.cli import build_parser


def test_dashboard_command_defaults_to_current_month() -> None:
    args = build_parser().parse_args(["main", "5f0c6c5f9b1e8a0001000001"])
    assert args.cmd == "main"
    assert args.period == "current_month"
    assert args.table is False


def test_royalty_command() -> None:
    args = build_parser().parse_args([
        "--table", "royalty", "m", "--currency", "USD",
        "--from", "2024-01-01", "--to", "2024-01-31", "--rounded",
    ])
    assert args.table and args.rounded
    assert (args.date_from, args.date_to) == ("2024-01-01", "2024-01-31")


def test_unknown_period_is_rejected() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["base", "m", "--period", "next_week"])
