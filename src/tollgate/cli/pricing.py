"""tollgate pricing — list priced models."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()


@click.command()
@click.option("--markup", default=2.0, type=float, show_default=True, help="Price multiplier over list price")
def pricing(markup: float) -> None:
    """List supported models with charged prices per million tokens."""
    from tollgate.metering.pricing import PricingTable

    table_data = PricingTable(markup=markup)
    cheapest = table_data.cheapest_model()

    table = Table(title=f"Model pricing (markup x{markup:g})")
    table.add_column("Model", style="bold cyan")
    table.add_column("Input $/1M", justify="right")
    table.add_column("Output $/1M", justify="right")
    for model, input_rate, output_rate in table_data.supported_models():
        label = f"{model} [dim](cheapest)[/dim]" if model == cheapest else model
        table.add_row(label, f"{input_rate:.2f}", f"{output_rate:.2f}")
    console.print(table)
