"""caresync CLI main entry point."""

from __future__ import annotations

from typing import Annotated

import typer

from caresync.cli._helpers import configure_logging
from caresync.cli.commands.config_cmd import config_app
from caresync.cli.commands.records import outcome_app, task_app
from caresync.cli.commands.sync_cmd import serve, status, sync, watch

# Main app
app = typer.Typer(
    name="caresync",
    help="caresync - knowledge-vector sync for versioned care plans",
    no_args_is_help=True,
)

app.add_typer(task_app, name="task")
app.add_typer(outcome_app, name="outcome")
app.add_typer(config_app, name="config")

app.command()(sync)
app.command()(watch)
app.command()(status)
app.command()(serve)


@app.callback()
def _main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log debug output to stderr")
    ] = False,
) -> None:
    configure_logging(verbose)


@app.command()
def version() -> None:
    """Show version information."""
    from caresync import __version__

    typer.echo(f"caresync v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
