"""CLI commands for the inbound mail listener."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dealdesk.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    SecretStore,
    load_listener_settings,
    mask_settings,
)
from dealdesk.errors import ConfigurationError, handle_error

from .ports import AccountRole
from .service import EmailListenerService
from .sqlite_store import SqliteActivityLog, SqliteCrmStore

console = Console()
error_console = Console(stderr=True)

DEFAULT_DATABASE_PATH = Path.home() / ".dealdesk" / "crm.sqlite3"

mailbox_app = typer.Typer(help="Inbound mail listener commands")
accounts_app = typer.Typer(help="Manage accounts in the local CRM database")
mailbox_app.add_typer(accounts_app, name="accounts")


def _config_path(config: Optional[Path]) -> Optional[Path]:
    if config is not None:
        return config.expanduser()
    return DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None


def _load_settings(config: Optional[Path]):
    try:
        return load_listener_settings(_config_path(config))
    except ConfigurationError as exc:
        error_console.print(f"[red]Configuration error:[/red] {handle_error(exc)}")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=error_console, rich_tracebacks=True)],
    )


@mailbox_app.command("run")
def run_listener(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Listener JSON config file"),
    database: Path = typer.Option(DEFAULT_DATABASE_PATH, "--database", "-d", help="SQLite CRM database"),
    exit_on_exhausted: bool = typer.Option(
        False,
        "--exit-on-exhausted",
        help="Exit once reconnect attempts are exhausted instead of idling in Stopped",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the listener until interrupted.

    Examples:
        dealdesk mailbox run --database ./crm.sqlite3
        EMAIL_USERNAME=ops@co.com EMAIL_PASSWORD=... dealdesk mailbox run
    """
    settings = _load_settings(config)
    _configure_logging(verbose)

    store = SqliteCrmStore(database.expanduser())
    activity_log = SqliteActivityLog(database.expanduser())
    service = EmailListenerService(
        settings,
        store=store,
        activity_log=activity_log,
        secret_store=SecretStore(),
    )

    async def _main():
        service.install_signal_handlers()
        return await service.run_forever(stop_when_exhausted=exit_on_exhausted)

    console.print(f"[bold blue]Listening on {settings.mailbox.host}/{settings.mailbox.folder}[/bold blue]")
    try:
        status = asyncio.run(_main())
    finally:
        store.close()
        activity_log.close()

    console.print(f"Stopped: {status.pipeline.get('stored', 0)} email(s) stored")
    if service.supervisor.exhausted.is_set():
        raise typer.Exit(2)


@mailbox_app.command("config")
def show_config(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Listener JSON config file"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the resolved listener configuration with secrets masked."""
    settings = _load_settings(config)
    payload = mask_settings(settings)
    if json_output:
        print(json.dumps(payload, indent=2))
        return

    table = Table(title="Mail listener configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    def _rows(prefix: str, data: dict) -> None:
        for key, value in data.items():
            name = f"{prefix}{key}"
            if isinstance(value, dict):
                _rows(f"{name}.", value)
            else:
                table.add_row(name, str(value))

    _rows("", payload)
    console.print(table)


@accounts_app.command("add")
def add_account(
    email: str = typer.Option(..., "--email", "-e", help="Account email address"),
    role: str = typer.Option("CLIENT", "--role", "-r", help="CLIENT, STAFF or ADMIN"),
    first_name: Optional[str] = typer.Option(None, "--first-name", help="First name"),
    last_name: Optional[str] = typer.Option(None, "--last-name", help="Last name"),
    database: Path = typer.Option(DEFAULT_DATABASE_PATH, "--database", "-d", help="SQLite CRM database"),
) -> None:
    """Add an account to the local CRM database."""
    try:
        role_enum = AccountRole(role.upper())
    except ValueError:
        error_console.print(f"Error: Invalid role '{role}'. Valid options: CLIENT, STAFF, ADMIN")
        raise typer.Exit(1)

    store = SqliteCrmStore(database.expanduser())
    try:
        account = store.add_account(
            email=email, role=role_enum, first_name=first_name, last_name=last_name
        )
    except sqlite3.IntegrityError:
        error_console.print(f"Error: An account for {email} already exists")
        raise typer.Exit(1)
    finally:
        store.close()

    console.print(f"[green]✓[/green] Added {account.role.value} account {account.email} ({account.id})")


@accounts_app.command("list")
def list_accounts(
    role: Optional[str] = typer.Option(None, "--role", "-r", help="Only list this role"),
    database: Path = typer.Option(DEFAULT_DATABASE_PATH, "--database", "-d", help="SQLite CRM database"),
) -> None:
    """List accounts in the local CRM database."""
    roles = None
    if role:
        try:
            roles = {AccountRole(role.upper())}
        except ValueError:
            error_console.print(f"Error: Invalid role '{role}'. Valid options: CLIENT, STAFF, ADMIN")
            raise typer.Exit(1)

    store = SqliteCrmStore(database.expanduser())
    try:
        accounts = store.list_accounts(roles)
    finally:
        store.close()

    if not accounts:
        console.print("[yellow]No accounts found[/yellow]")
        return

    table = Table(title="Accounts")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Email", style="green")
    table.add_column("Role", style="magenta")
    table.add_column("Name", style="blue")
    for account in accounts:
        name = " ".join(part for part in (account.first_name, account.last_name) if part)
        table.add_row(account.id[:12], account.email, account.role.value, name or "-")
    console.print(table)


__all__ = ["mailbox_app", "accounts_app"]
