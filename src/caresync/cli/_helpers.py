"""Shared CLI helpers for configuration, stores, and output formatting."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Coroutine
from typing import Any, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from caresync.storage.base import VersionStore
from caresync.utils.config import CareSyncConfig, close_shared_stores, get_shared_store
from caresync.utils.config import get_config as _load_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

console = Console()


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr; DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def get_config() -> CareSyncConfig:
    """Get CLI configuration, re-read from disk."""
    return _load_config(reload=True)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command with proper store cleanup.

    Replaces bare ``asyncio.run()`` to ensure aiosqlite connections are
    closed *before* the event loop is torn down.
    """

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            await close_shared_stores()
            # Drain pending callbacks from aiosqlite worker threads before
            # asyncio.run() tears down the loop.
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


async def get_store(store_name: str | None = None) -> VersionStore:
    """Open the named store, or the configured current store."""
    return await get_shared_store(store_name)


def fail(message: str) -> NoReturn:
    """Print an error in red and exit non-zero."""
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


def print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result in appropriate format."""
    if as_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    if data.get("error"):
        typer.secho(f"Error: {data['error']}", fg=typer.colors.RED)
        if data.get("failed_state"):
            typer.secho(f"  [failed while {data['failed_state']}]", fg=typer.colors.BRIGHT_BLACK)
    elif "message" in data:
        typer.secho(data["message"], fg=typer.colors.GREEN)
        if data.get("warnings"):
            for warning in data["warnings"]:
                typer.secho(warning, fg=typer.colors.YELLOW)
    else:
        table = Table(show_header=False, box=None)
        table.add_column("key", style="cyan")
        table.add_column("value")
        for key, value in data.items():
            if isinstance(value, dict):
                value = ", ".join(f"{k}={v}" for k, v in sorted(value.items())) or "-"
            elif isinstance(value, list):
                value = str(len(value))
            table.add_row(key, str(value))
        console.print(table)
