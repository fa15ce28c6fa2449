"""CLI interface for the chatgate proxy and its API keys."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from . import proxy as proxy_mod
from .config import GatewayConfig, load_config
from .keystore import KeyNotFound, KeyStore

console = Console()


@click.group()
@click.option(
    "-c", "--config",
    envvar="CHATGATE_CONFIG",
    default=None,
    help="Path to chatgate.yaml config file",
)
@click.pass_context
def cli(ctx, config):
    """chatgate: API-key protected streaming proxy for a local Ollama backend."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


def _load(ctx) -> GatewayConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def serve(ctx):
    """Start the proxy server."""
    config = _load(ctx)

    existing_pid = proxy_mod.read_pidfile()
    if existing_pid is not None:
        try:
            os.kill(existing_pid, 0)
            console.print(
                f"[yellow]Gateway already running (PID {existing_pid}). "
                f"Stop it first with: chatgate stop[/yellow]"
            )
            sys.exit(1)
        except ProcessLookupError:
            proxy_mod.remove_pidfile()

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    console.print("[bold]Starting chatgate...[/bold]")
    console.print(f"  Backend:  {config.backend_model} @ {config.backend_url}")
    console.print(f"  Key store: {config.database_url}")
    console.print(f"  Listening on: {config.host}:{config.port}")

    from .server import serve as run_server

    proxy_mod.write_pidfile()
    try:
        started = run_server(config)
    finally:
        proxy_mod.remove_pidfile()
    if not started:
        console.print("[red]Gateway failed to start.[/red]")
        sys.exit(1)


@cli.command()
def stop():
    """Stop a running proxy server."""
    if proxy_mod.stop_gateway():
        console.print("[green]Gateway stopped.[/green]")
    else:
        console.print("[yellow]Gateway was not running.[/yellow]")


@cli.command()
@click.pass_context
def check(ctx):
    """Check the health of a running gateway and of the backend."""
    import httpx

    config = _load(ctx)
    ok = True

    try:
        resp = httpx.get(f"http://127.0.0.1:{config.port}/health", timeout=5.0)
        data = resp.json()
        if resp.status_code == 200:
            console.print(f"[green]●[/green] Gateway on :{config.port} (database {data.get('database')})")
        else:
            console.print(f"[red]●[/red] Gateway on :{config.port} (database {data.get('database')})")
            ok = False
    except (httpx.HTTPError, ValueError):
        console.print("[dim]○ Gateway not running[/dim]")
        ok = False

    try:
        # Ollama answers GET / with "Ollama is running"
        resp = httpx.get(f"{config.backend_url}/", timeout=5.0)
        alive = resp.status_code == 200
    except httpx.HTTPError:
        alive = False
    icon = "[green]●[/green]" if alive else "[red]●[/red]"
    console.print(f"{icon} Backend: {config.backend_model} @ {config.backend_url}")

    if not (ok and alive):
        sys.exit(1)


# --- API key subcommand group ---


def _run_with_store(ctx, operation):
    """Run ``operation(store)`` against the configured key store.

    Store errors and unknown ids are reported and exit with status 1; the
    engine is always disposed.
    """
    config = _load(ctx)

    async def _main():
        store = KeyStore(config.database_url)
        try:
            await store.connect()
            return await operation(store)
        finally:
            await store.close()

    try:
        return asyncio.run(_main())
    except KeyNotFound as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except (SQLAlchemyError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def _fmt_time(value) -> str:
    return value.isoformat() if value else "-"


@cli.group()
def keys():
    """Manage API keys."""
    pass


@keys.command("create")
@click.argument("description", required=False)
@click.pass_context
def keys_create(ctx, description):
    """Create a new API key."""
    record = _run_with_store(ctx, lambda store: store.create(description))
    console.print("\n[green bold]API key created.[/green bold]")
    console.print(f"  Key: {record.key}")
    console.print(f"  Description: {record.description}")
    console.print(f"  ID: {record.id}\n")


@keys.command("list")
@click.pass_context
def keys_list(ctx):
    """List all API keys, newest first."""
    records = _run_with_store(ctx, lambda store: store.list_keys())
    if not records:
        console.print("[dim]No API keys found.[/dim]")
        return

    table = Table(title="API Keys")
    table.add_column("ID", justify="right")
    table.add_column("Key", overflow="fold")
    table.add_column("Description")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Last used")
    for r in records:
        status_str = "[green]Active[/green]" if r.is_active else "[red]Inactive[/red]"
        last_used = _fmt_time(r.last_used_at) if r.last_used_at else "Never used"
        table.add_row(
            str(r.id), r.key, r.description or "N/A",
            status_str, _fmt_time(r.created_at), last_used,
        )
    console.print(table)


@keys.command("activate")
@click.argument("key_id", type=int)
@click.pass_context
def keys_activate(ctx, key_id):
    """Activate an API key."""
    record = _run_with_store(ctx, lambda store: store.set_active(key_id, True))
    console.print(f"[green]API key {record.id} activated.[/green]")


@keys.command("deactivate")
@click.argument("key_id", type=int)
@click.pass_context
def keys_deactivate(ctx, key_id):
    """Deactivate an API key."""
    record = _run_with_store(ctx, lambda store: store.set_active(key_id, False))
    console.print(f"[yellow]API key {record.id} deactivated.[/yellow]")


@keys.command("delete")
@click.argument("key_id", type=int)
@click.pass_context
def keys_delete(ctx, key_id):
    """Delete an API key."""
    _run_with_store(ctx, lambda store: store.delete(key_id))
    console.print(f"[green]API key {key_id} deleted.[/green]")
