"""tollgate serve — run the metering proxy."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.console import Console

console = Console()


@click.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config JSON file")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
@click.option("--db", "db_path", default=None, help="Ledger database path")
@click.option("--upstream-url", default=None, help="Upstream Messages endpoint")
@click.option("--api-key-env", default=None, help="Environment variable holding the upstream API key")
@click.option("--markup", default=None, type=float, help="Price multiplier over list price")
@click.option("--daily-limit", "daily_limit_cents", default=None, type=int, help="Daily spend cap per account, in cents")
@click.option("--strict-floor", is_flag=True, help="Refuse charges that would take a balance below zero")
@click.option("--mock", "mock_upstream", is_flag=True, help="Answer with mock responses when no API key is set")
@click.option("-v", "--verbose", count=True)
def serve(
    config_path: str | None,
    host: str | None,
    port: int | None,
    db_path: str | None,
    upstream_url: str | None,
    api_key_env: str | None,
    markup: float | None,
    daily_limit_cents: int | None,
    strict_floor: bool,
    mock_upstream: bool,
    verbose: int,
) -> None:
    """Run the metering proxy in the foreground."""
    import logging
    import os

    from tollgate.core.config import ProxyConfig
    from tollgate.core.errors import TollgateError
    from tollgate.metering.ledger import Ledger
    from tollgate.metering.proxy import create_proxy_server

    logging.basicConfig(level=logging.DEBUG if verbose > 1 else logging.INFO if verbose else logging.WARNING)

    try:
        if config_path:
            config = ProxyConfig.from_dict(json.loads(Path(config_path).read_text()))
        else:
            config = ProxyConfig().resolve_env()
    except TollgateError as e:
        raise click.ClickException(str(e))

    # CLI overrides
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if db_path is not None:
        config.db_path = db_path
    if upstream_url is not None:
        config.upstream.url = upstream_url
    if api_key_env:
        api_key = os.environ.get(api_key_env)
        if not api_key:
            raise click.ClickException(f"Environment variable {api_key_env} not set")
        config.upstream.api_key = api_key
    if markup is not None:
        config.billing.markup = markup
    if daily_limit_cents is not None:
        config.billing.daily_limit_cents = daily_limit_cents
    if strict_floor:
        config.billing.strict_floor = True
    if mock_upstream:
        config.mock_upstream = True

    try:
        config.billing.validate()
    except TollgateError as e:
        raise click.ClickException(str(e))

    if not config.upstream.api_key and not config.mock_upstream:
        console.print("[yellow]No upstream API key configured; requests will fail with 500 (use --mock for development)[/yellow]")

    ledger = Ledger(config.db_path)
    server = create_proxy_server(config, ledger)
    host_, port_ = server.server_address[:2]
    console.print(f"[bold green]tollgate[/bold green] serving on http://{host_}:{port_}")
    console.print(f"  upstream: {config.upstream.url}{' (mock)' if server.app.is_mock else ''}")
    console.print(f"  ledger:   {config.db_path}")
    console.print(
        f"  markup x{config.billing.markup}, daily limit ${config.billing.daily_limit_cents / 100:.2f}, "
        f"downgrade to {config.billing.downgrade_model} below ${config.billing.low_balance_cents / 100:.2f}"
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        console.print("\nStopped.")
    finally:
        server.server_close()
        server.app.close()
        ledger.close()
