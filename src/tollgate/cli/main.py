"""tollgate CLI entry point."""

from __future__ import annotations

import click
from rich.console import Console

from tollgate import __version__

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="tollgate")
def cli() -> None:
    """tollgate: token-metering proxy for managed assistant instances."""


# Import and register subcommands
from tollgate.cli.serve import serve  # noqa: E402
from tollgate.cli.accounts import account, instance  # noqa: E402
from tollgate.cli.billing import balance, credit, topup  # noqa: E402
from tollgate.cli.usage import usage  # noqa: E402
from tollgate.cli.pricing import pricing  # noqa: E402

cli.add_command(serve)
cli.add_command(account)
cli.add_command(instance)
cli.add_command(balance)
cli.add_command(credit)
cli.add_command(topup)
cli.add_command(usage)
cli.add_command(pricing)


if __name__ == "__main__":
    cli()
