"""
Omega relayer CLI entry point.

Usage:
    omega-relayer [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .dedup import DedupStores
from .engine import RelayerEngine, configured_keypair, watched_sources
from .exceptions import RelayerError
from .logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(package_name="omega-relayer", message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Load settings from this .env file")
@click.pass_context
def cli(ctx, env_file: str | None):
    """Omega relayer - Solana <-> Omega bridge reconciliation engine."""
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@cli.command()
@click.option("--log-level", help="Override the configured log level")
@click.option("--plain-logs", is_flag=True, help="Human-readable logs instead of JSON")
@click.pass_context
def run(ctx, log_level: str | None, plain_logs: bool):
    """Run pollers, listener and executor until interrupted."""
    settings = load_settings(ctx.obj["env_file"])
    setup_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_json and not plain_logs,
    )

    try:
        engine = RelayerEngine.from_settings(settings)
    except RelayerError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    try:
        asyncio.run(engine.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show configured sources and dedup store sizes."""
    settings = load_settings(ctx.obj["env_file"])

    console.print("\n[bold blue]Omega Relayer Status[/bold blue]\n")
    console.print(f"Environment: [cyan]{settings.environment}[/cyan]")
    console.print(f"Solana RPC: [cyan]{settings.solana.rpc_url}[/cyan]")
    console.print(f"Omega RPC: [cyan]{', '.join(settings.omega.rpc_urls)}[/cyan] (chain {settings.omega.chain_id})")

    bridge = settings.omega.bridge_address or "[yellow]Not configured[/yellow]"
    console.print(f"Bridge: {bridge}")
    console.print(f"Listener: {'enabled' if settings.listener.enabled else 'disabled'}")

    try:
        keypair = configured_keypair(settings)
    except RelayerError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    sources = watched_sources(settings, keypair)
    table = Table(title="Watched Sources")
    table.add_column("Kind", style="cyan")
    table.add_column("Address", style="green")
    for source in sources:
        table.add_row(source.kind.value, source.address)
    if not sources:
        console.print("[dim]No Solana sources configured[/dim]")
    else:
        console.print(table)

    try:
        stores = DedupStores(settings.store.data_dir)
    except RelayerError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)

    table = Table(title="Dedup Stores")
    table.add_column("Domain", style="cyan")
    table.add_column("Entries", style="yellow", justify="right")
    table.add_column("Path")
    for stats in stores.stats():
        table.add_row(stats["domain"], str(stats["entries"]), stats["path"])
    console.print(table)
    console.print()


if __name__ == "__main__":
    cli()
