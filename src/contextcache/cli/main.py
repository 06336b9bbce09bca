"""contextcache CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from contextcache.cli.context import build_cmd, cleanup_cmd, clear_cmd, context_cmd, status_cmd
from contextcache.cli.overflow import overflow_cmd, select_cmd, stats_cmd
from contextcache.cli.runtime import configure_logging


def _version() -> str:
    try:
        return importlib.metadata.version("contextcache")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"contextcache {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="contextcache",
    help=(
        "contextcache: token-budgeted context bundles for LLM prompts.\n\n"
        "  contextcache context   Cached bundle for a project/document type.\n"
        "  contextcache overflow  Does the corpus fit the model's context budget?"
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log build activity to stderr.")
    ] = False,
) -> None:
    """contextcache: token-budgeted context bundles for LLM prompts."""
    configure_logging(verbose)


app.command("build")(build_cmd)
app.command("context")(context_cmd)
app.command("status")(status_cmd)
app.command("clear")(clear_cmd)
app.command("cleanup")(cleanup_cmd)
app.command("overflow")(overflow_cmd)
app.command("select")(select_cmd)
app.command("stats")(stats_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed contextcache version."""
    typer.echo(f"contextcache {_version()}")


if __name__ == "__main__":
    app()
