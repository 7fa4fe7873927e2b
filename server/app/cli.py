"""Typer CLI for the Forgebench server.

Commands:
- serve: Start the API server
- seed: Load providers and models from a YAML catalog
- usage: Show a user's usage summary
- balance: Show or set a user's token balance
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from server.app.catalog_loader import load_catalog, seed_catalog
from server.app.exceptions import ForgeError
from server.app.llm.usage_ledger import UsageLedger
from server.app.settings import Settings, get_settings
from server.app.storage import MeteringStore, create_metering_store

T = TypeVar("T")

app = typer.Typer(
    name="forgebench",
    help="Forgebench AI model routing and metering server",
    no_args_is_help=True,
)

console = Console()


def _with_store(settings: Settings, action: Callable[[MeteringStore], Awaitable[T]]) -> T:
    """Run an async action against an initialized store, then close it."""

    async def run() -> T:
        store = create_metering_store(settings)
        await store.initialize()
        try:
            return await action(store)
        finally:
            await store.close()

    return asyncio.run(run())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind to"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Log level"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload (development)"),
):
    """Start the Forgebench API server."""
    import uvicorn

    from server.app.observability.logging import setup_logging

    settings = get_settings()
    setup_logging(settings)

    host = host or settings.host
    port = port or settings.port
    log_level = log_level or settings.log_level

    console.print("[bold green]Starting Forgebench server...[/bold green]")
    console.print(f"Host: {host}")
    console.print(f"Port: {port}")
    console.print(f"Backend: {settings.persistence_backend} ({settings.persistence_uri})")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print()

    uvicorn.run(
        "server.app.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level,
        reload=reload,
    )


@app.command()
def seed(
    catalog_path: Path = typer.Argument(..., help="Path to the catalog YAML file"),
):
    """Load providers, models and task affinities from a YAML catalog."""
    settings = get_settings()
    try:
        catalog = load_catalog(catalog_path)
    except ForgeError as e:
        console.print(f"[bold red]✗ {e.message}[/bold red]")
        raise typer.Exit(1)

    result = _with_store(settings, lambda store: seed_catalog(store, catalog, catalog_path))

    console.print(f"[bold green]✓ Catalog seeded[/bold green] from {catalog_path}")
    console.print(f"Providers: {result.providers}")
    console.print(f"Models: {result.models}")
    console.print(f"Task affinities: {result.affinities}")


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User ID"),
    entries: bool = typer.Option(False, "--entries", "-e", help="List individual turns"),
):
    """Show a user's usage summary."""
    settings = get_settings()

    async def collect(store: MeteringStore):
        ledger = UsageLedger(store)
        return await ledger.get_user_summary(user_id), await ledger.get_user_entries(user_id)

    summary, records = _with_store(settings, collect)

    table = Table(title=f"Usage for {user_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key, value in summary.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)

    if entries and records:
        detail = Table(title="Turns")
        for column in ("created_at", "model_id", "total_tokens", "cost", "cached", "fallback", "ok"):
            detail.add_column(column)
        for record in records:
            detail.add_row(
                record.created_at.isoformat(timespec="seconds"),
                record.model_id or "-",
                str(record.total_tokens),
                f"${record.cost:.6f}",
                "yes" if record.was_cached else "",
                "yes" if record.fallback_used else "",
                "yes" if record.success else record.error_message,
            )
        console.print(detail)


@app.command()
def balance(
    user_id: str = typer.Argument(..., help="User ID"),
    set_to: Optional[int] = typer.Option(None, "--set", help="Set the balance to this value"),
):
    """Show or set a user's token balance."""
    settings = get_settings()

    if set_to is not None and set_to < 0:
        console.print("[bold red]✗ Balance must not be negative[/bold red]")
        raise typer.Exit(1)

    async def run(store: MeteringStore) -> Optional[int]:
        if set_to is not None:
            await store.set_token_balance(user_id, set_to)
        return await store.get_token_balance(user_id)

    current = _with_store(settings, run)

    if current is None:
        console.print(f"[yellow]No balance profile for {user_id}[/yellow]")
        raise typer.Exit(1)
    console.print(f"Balance for {user_id}: [bold]{current}[/bold]")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
