"""tollgate usage — usage report for an account."""

from __future__ import annotations

import datetime as _dt
import json

import click
from rich.console import Console
from rich.table import Table

from tollgate.cli.common import db_option, format_cents

console = Console()


def _month_bounds(now: _dt.datetime) -> tuple[_dt.datetime, _dt.datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_month = (start + _dt.timedelta(days=32)).replace(day=1)
    return start, next_month - _dt.timedelta(microseconds=1)


@click.command()
@click.argument("account_id")
@click.option("--from", "start", default=None, type=click.DateTime(), help="Start (default: start of month)")
@click.option("--to", "end", default=None, type=click.DateTime(), help="End (default: end of month)")
@click.option("--out", "out_path", default=None, type=click.Path(), help="Write the report as JSON")
@db_option
def usage(
    account_id: str,
    start: _dt.datetime | None,
    end: _dt.datetime | None,
    out_path: str | None,
    db_path: str,
) -> None:
    """Show token usage and cost by model and instance."""
    from tollgate.core.errors import atomic_write
    from tollgate.metering.ledger import Ledger

    month_start, month_end = _month_bounds(_dt.datetime.now().astimezone())
    start = start.astimezone() if start else month_start
    end = end.astimezone() if end else month_end

    ledger = Ledger(db_path)
    try:
        report = ledger.usage_report(account_id, start, end)
    finally:
        ledger.close()

    if out_path:
        with atomic_write(out_path) as tmp:
            tmp.write_text(json.dumps(report.to_dict(), indent=2))
        console.print(f"Wrote usage report to {out_path}")

    table = Table(title=f"Usage for {account_id} ({start:%Y-%m-%d} .. {end:%Y-%m-%d})")
    table.add_column("Model", style="bold cyan")
    table.add_column("Tokens in", justify="right")
    table.add_column("Tokens out", justify="right")
    table.add_column("Cost", justify="right")
    for m in report.by_model:
        table.add_row(m.model, f"{m.tokens_in:,}", f"{m.tokens_out:,}", format_cents(m.cost_cents))
    table.add_row(
        "[bold]total[/bold]",
        f"{report.total_tokens_in:,}",
        f"{report.total_tokens_out:,}",
        f"[bold]{format_cents(report.total_cost_cents)}[/bold]",
    )
    console.print(table)

    if report.instances:
        inst_table = Table(title="Instances")
        inst_table.add_column("ID", style="bold cyan")
        inst_table.add_column("Status")
        inst_table.add_column("Requests", justify="right")
        inst_table.add_column("Cost", justify="right")
        for inst in report.instances:
            inst_table.add_row(
                inst["id"], inst["status"], str(inst["usage_count"]), format_cents(inst["cost_cents"])
            )
        console.print(inst_table)
