"""Options and helpers shared by the tollgate commands."""

from __future__ import annotations

import os

import click


def db_option(f):
    return click.option(
        "--db",
        "db_path",
        default=lambda: os.environ.get("TOLLGATE_DB_PATH", "tollgate.db"),
        show_default="tollgate.db",
        help="Ledger database path",
    )(f)


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:,.2f}"
