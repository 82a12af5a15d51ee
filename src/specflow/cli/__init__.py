"""Command line entry point for specflow."""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from specflow import __version__
from specflow.cli.commands import orchestrate

err_console = Console(stderr=True)

app = typer.Typer(
    name="specflow",
    help="Drive spec-driven projects from design to merge with an AI skill runner",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(orchestrate.app, name="orchestrate")


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose >= 1:
        level = logging.INFO
    if verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"specflow {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase log output (-v info, -vv debug)"
    ),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    """Specflow command line."""
    _configure_logging(verbose)


def main():
    app()


if __name__ == "__main__":
    main()
