"""Command line entry points for mailsync."""

from typer import Typer

from .sync import run, serve, status


cli = Typer(help="mailsync command line tools")
cli.command("run")(run)
cli.command("serve")(serve)
cli.command("status")(status)

__all__ = ["cli"]
