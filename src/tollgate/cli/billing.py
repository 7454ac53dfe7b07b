"""tollgate balance / credit / topup — inspect and adjust account credit."""

from __future__ import annotations

import json

import click
from rich.console import Console

from tollgate.cli.common import db_option, format_cents
from tollgate.core.errors import LedgerError
from tollgate.metering.ledger import Ledger

console = Console()


@click.command()
@click.argument("account_id")
@click.option("--format", "fmt", default="table", type=click.Choice(["table", "json"]))
@db_option
def balance(account_id: str, fmt: str, db_path: str) -> None:
    """Show an account's balance and today's spend."""
    ledger = Ledger(db_path)
    try:
        bal = ledger.get_balance(account_id)
        today = ledger.today_spend_cents(account_id)
    finally:
        ledger.close()

    if fmt == "json":
        click.echo(json.dumps({**bal.to_dict(), "today_spend_cents": today}, indent=2))
        return

    color = "red" if bal.credits_cents <= 0 else "green"
    console.print("[bold]Account Balance[/bold]")
    console.print(f"  Balance:      [{color}]{format_cents(bal.credits_cents)}[/{color}]")
    console.print(f"  Spent today:  {format_cents(today)}")
    console.print(
        f"  Auto Top-up:  {'[green]Enabled[/green]' if bal.auto_topup_enabled else '[dim]Disabled[/dim]'}"
        f" (below {format_cents(bal.topup_threshold_cents)}, add {format_cents(bal.topup_amount_cents)})"
    )


@click.command()
@click.argument("account_id")
@click.argument("amount_cents", type=click.IntRange(min=1))
@db_option
def credit(account_id: str, amount_cents: int, db_path: str) -> None:
    """Add credit to an account, resuming paused instances."""
    ledger = Ledger(db_path)
    try:
        new_balance = ledger.credit(account_id, amount_cents)
    except LedgerError as e:
        raise click.ClickException(str(e))
    finally:
        ledger.close()
    console.print(f"Credited {format_cents(amount_cents)}; balance now {format_cents(new_balance)}")


@click.command()
@click.argument("account_id")
@click.option("--enable/--disable", default=True)
@click.option("--threshold", "threshold_cents", default=None, type=int, help="Top up below this many cents")
@click.option("--amount", "amount_cents", default=None, type=int, help="Cents to add per top-up")
@db_option
def topup(
    account_id: str,
    enable: bool,
    threshold_cents: int | None,
    amount_cents: int | None,
    db_path: str,
) -> None:
    """Configure automatic top-up for an account."""
    ledger = Ledger(db_path)
    try:
        bal = ledger.set_auto_topup(account_id, enable, threshold_cents, amount_cents)
    except LedgerError as e:
        raise click.ClickException(str(e))
    finally:
        ledger.close()
    state = "enabled" if bal.auto_topup_enabled else "disabled"
    console.print(
        f"Auto top-up {state}: below {format_cents(bal.topup_threshold_cents)}, "
        f"add {format_cents(bal.topup_amount_cents)}"
    )
