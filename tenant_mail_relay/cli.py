"""Command-line interface for the tenant mail relay.

This module manages domains and SMTP credentials directly against the
database, without going through the HTTP API, and starts the server.

Usage:
    tenant-mail-relay serve --port 8080
    tenant-mail-relay domains list
    tenant-mail-relay domains add example.com
    tenant-mail-relay domains remove example.com
    tenant-mail-relay smtp show
    tenant-mail-relay smtp set --user relay@example.com --password secret
    tenant-mail-relay queue
    tenant-mail-relay stats --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from tenant_mail_relay import __version__
from tenant_mail_relay.config_loader import load_settings
from tenant_mail_relay.core import RelayCore
from tenant_mail_relay.errors import RelayError

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_millis(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _call_core(ctx: click.Context, op: Callable[[RelayCore], Awaitable[T]]) -> T:
    """Open the configured database, run ``op`` against a core and exit on errors."""
    settings = ctx.obj["settings"]

    async def _run() -> T:
        core = RelayCore(
            db_path=settings["db_path"],
            smtp_host=settings["smtp_host"],
            smtp_port=settings["smtp_port"],
            smtp_user=settings.get("smtp_user"),
            smtp_password=settings.get("smtp_password"),
        )
        await core.persistence.init_db()
        await core.credentials.load()
        return await op(core)

    try:
        return run_async(_run())
    except RelayError as exc:
        print_error(exc.message)
        sys.exit(1)


@click.group()
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini.")
@click.option("--db", "db_path", default=None, help="Database path (overrides configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """tenant-mail-relay CLI - manage domains, credentials and the server."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Start the HTTP API with the delivery worker and archive culler."""
    from tenant_mail_relay.server import run

    settings = dict(ctx.obj["settings"])
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    run(settings)


@main.group("domains", invoke_without_command=True)
@click.pass_context
def domains(ctx: click.Context) -> None:
    """Manage registered domains."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@domains.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_list(ctx: click.Context, as_json: bool) -> None:
    """List registered domains."""
    entries = _call_core(ctx, lambda core: core.list_domains())

    if as_json:
        print_json(entries)
        return

    if not entries:
        console.print("[dim]No domains configured.[/dim]")
        return

    table = Table(title="Domains")
    table.add_column("Domain", style="cyan")
    table.add_column("Created (UTC)")
    for entry in entries:
        table.add_row(entry["domain"], _format_millis(entry.get("created_at")))
    console.print(table)


@domains.command("add")
@click.argument("domain")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_add(ctx: click.Context, domain: str, as_json: bool) -> None:
    """Register DOMAIN and print its bearer token."""
    entry = _call_core(ctx, lambda core: core.register_domain(domain))
    if as_json:
        print_json(entry)
        return
    print_success(f"Domain '{entry['domain']}' registered")
    console.print(f"  Token: [bold]{entry['token']}[/bold]")


@domains.command("remove")
@click.argument("domain")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def domains_remove(ctx: click.Context, domain: str, force: bool) -> None:
    """Remove DOMAIN; its token stops working immediately."""
    if not force and not click.confirm(f"Remove domain '{domain}'?"):
        console.print("[dim]Aborted.[/dim]")
        return
    _call_core(ctx, lambda core: core.delete_domain(domain))
    print_success(f"Domain '{domain}' removed")


@main.group("smtp", invoke_without_command=True)
@click.pass_context
def smtp(ctx: click.Context) -> None:
    """Inspect or change the outbound relay credentials."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@smtp.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def smtp_show(ctx: click.Context, as_json: bool) -> None:
    """Show the relay address and configured user."""
    status = _call_core(ctx, lambda core: core.get_transport_status())
    if as_json:
        print_json(status)
        return
    console.print(f"  Relay:       {status['host']}:{status['port']}")
    if status["configured"]:
        console.print(f"  Credentials: {status['user']}")
    else:
        console.print("  Credentials: [dim]none configured[/dim]")


@smtp.command("set")
@click.option("--user", "-u", required=True, help="SMTP username.")
@click.option("--password", "-p", prompt=True, hide_input=True, help="SMTP password.")
@click.pass_context
def smtp_set(ctx: click.Context, user: str, password: str) -> None:
    """Persist new relay credentials.

    Writes the database directly. A running server keeps its current
    credentials until restart; use POST /smtp to update a live server.
    """
    _call_core(ctx, lambda core: core.set_transport_credentials(user, password))
    print_success(f"SMTP credentials updated for '{user}'")


@main.command("queue")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def queue(ctx: click.Context, as_json: bool) -> None:
    """List messages waiting for delivery, oldest first."""
    entries = _call_core(ctx, lambda core: core.persistence.list_queue())

    if as_json:
        print_json(entries)
        return

    if not entries:
        console.print("[dim]Queue is empty.[/dim]")
        return

    table = Table(title="Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for entry in entries:
        table.add_row(
            entry["id"],
            entry["status"],
            entry["from"],
            entry["subject"],
            str(entry["attempts"]),
            entry.get("last_error") or "-",
        )
    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show queue and archive sizes."""
    health = _call_core(ctx, lambda core: core.health())
    if as_json:
        print_json(health)
        return
    console.print(f"  Queue:   {health['queue_size']}")
    console.print(f"  Archive: {health['archive_size']}")


if __name__ == "__main__":
    main()
