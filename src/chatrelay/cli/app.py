"""
Main Typer application for the chatrelay CLI.

This module defines the root CLI application and registers the relay commands.
"""

from typing import Annotated

import typer

from chatrelay import __version__
from chatrelay.cli.commands import relay
from chatrelay.cli.output import print_info

# Create the main Typer app
app = typer.Typer(
    name="chatrelay",
    help="Relay messages between Slack and Lark.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        print_info(f"chatrelay version [green]{__version__}[/green]")
        raise typer.Exit()


# noinspection PyUnusedLocal
@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    [bold blue]chatrelay[/bold blue] - Slack ↔ Lark relay

    Forwards messages between mapped Slack channels and Lark chats.
    """


app.command("validate")(relay.validate)
app.command("start")(relay.start)
app.command("status")(relay.status)


if __name__ == "__main__":
    app()
