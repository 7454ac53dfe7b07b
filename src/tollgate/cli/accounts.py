"""tollgate account / instance — create accounts and provision proxy secrets."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from tollgate.cli.common import db_option, format_cents
from tollgate.core.errors import LedgerError
from tollgate.core.models import BillingMode, InstanceStatus
from tollgate.metering.ledger import Ledger

console = Console()


@click.group()
def account() -> None:
    """Manage accounts."""


@account.command("create")
@click.argument("account_id")
@click.option("--credits", "credits_cents", default=0, type=int, help="Starting balance in cents")
@click.option("--email", default=None)
@db_option
def account_create(account_id: str, credits_cents: int, email: str | None, db_path: str) -> None:
    """Create an account with a starting balance."""
    ledger = Ledger(db_path)
    try:
        ledger.create_account(account_id, credits_cents=credits_cents, email=email)
    except LedgerError as e:
        raise click.ClickException(str(e))
    finally:
        ledger.close()
    console.print(f"Created account [bold cyan]{account_id}[/bold cyan] with {format_cents(credits_cents)}")


@click.group()
def instance() -> None:
    """Manage instances."""


@instance.command("create")
@click.argument("account_id")
@click.option("--model", default=None, help="Assigned model (overrides the caller's)")
@click.option(
    "--status",
    default=InstanceStatus.ACTIVE.value,
    type=click.Choice([s.value for s in InstanceStatus]),
)
@click.option("--channel", "channel_type", default="TELEGRAM")
@click.option("--byok", is_flag=True, help="Instance uses its own upstream key")
@db_option
def instance_create(
    account_id: str,
    model: str | None,
    status: str,
    channel_type: str,
    byok: bool,
    db_path: str,
) -> None:
    """Provision an instance and print its proxy secret."""
    ledger = Ledger(db_path)
    try:
        inst = ledger.create_instance(
            account_id,
            model=model,
            status=InstanceStatus(status),
            channel_type=channel_type,
            billing_mode=BillingMode.BYOK if byok else BillingMode.MANAGED,
        )
    except LedgerError as e:
        raise click.ClickException(str(e))
    finally:
        ledger.close()
    console.print(f"Instance [bold cyan]{inst.id}[/bold cyan] ({inst.status.value})")
    console.print(f"  proxy secret: {inst.proxy_secret}")


@instance.command("list")
@click.argument("account_id")
@db_option
def instance_list(account_id: str, db_path: str) -> None:
    """List an account's instances."""
    ledger = Ledger(db_path)
    try:
        instances = ledger.list_instances(account_id)
    finally:
        ledger.close()
    table = Table(title=f"Instances for {account_id}")
    table.add_column("ID", style="bold cyan")
    table.add_column("Status")
    table.add_column("Model", style="dim")
    table.add_column("Channel")
    table.add_column("Billing")
    for inst in instances:
        status_style = "red" if inst.status is InstanceStatus.PAUSED else "green" if inst.status.can_proxy else "yellow"
        table.add_row(
            inst.id,
            f"[{status_style}]{inst.status.value}[/{status_style}]",
            inst.model or "-",
            inst.channel_type,
            inst.billing_mode.value,
        )
    console.print(table)


@instance.command("set-status")
@click.argument("instance_id")
@click.argument("status", type=click.Choice([s.value for s in InstanceStatus]))
@db_option
def instance_set_status(instance_id: str, status: str, db_path: str) -> None:
    """Set an instance's lifecycle status."""
    ledger = Ledger(db_path)
    try:
        ledger.set_instance_status(instance_id, InstanceStatus(status))
    except LedgerError as e:
        raise click.ClickException(str(e))
    finally:
        ledger.close()
    console.print(f"Instance [bold cyan]{instance_id}[/bold cyan] is now {status}")
