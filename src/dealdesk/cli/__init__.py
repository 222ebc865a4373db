"""Command line entry points for dealdesk services."""

from typer import Typer

from ..ingestion.mailbox.cli import mailbox_app


cli = Typer(help="Dealdesk command line tools")
cli.add_typer(mailbox_app, name="mailbox")

__all__ = ["cli", "mailbox_app"]
