"""CLI commands for configuration management."""

from __future__ import annotations

import json
from typing import Annotated

import typer

from caresync.cli._helpers import fail, get_config, output_result
from caresync.sync.policy import policy_from_name

config_app = typer.Typer(help="Configuration management")


@config_app.command("show")
def config_show(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show the effective configuration.

    Examples:
        caresync config show
        caresync config show --json
    """
    config = get_config()
    data = config.to_dict()
    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    typer.secho(f"Config file: {config.config_path}", fg=typer.colors.BRIGHT_BLACK)
    output_result(data)


@config_app.command("set-remote")
def config_set_remote(
    url: Annotated[str, typer.Argument(help="Remote base URL (e.g., http://localhost:8000)")],
    user_id: Annotated[
        str | None, typer.Option("--user", "-u", help="Tenant on the remote")
    ] = None,
    policy: Annotated[
        str | None,
        typer.Option("--policy", "-p", help="Default conflict policy: keep-remote or keep-device"),
    ] = None,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Request timeout in seconds")
    ] = None,
) -> None:
    """Point this device at a remote.

    Examples:
        caresync config set-remote http://localhost:8000
        caresync config set-remote https://sync.example.org --user alice --policy keep-device
    """
    config = get_config()
    if policy is not None:
        try:
            policy_from_name(policy)
        except ValueError as e:
            fail(str(e))
        config.remote.conflict_policy = policy.strip().lower()
    if timeout is not None:
        if timeout <= 0:
            fail("Timeout must be positive")
        config.remote.timeout = timeout
    try:
        config.set_remote(url.rstrip("/"), user_id)
    except ValueError as e:
        fail(str(e))

    typer.secho("Remote configured!", fg=typer.colors.GREEN)
    typer.echo(f"  URL: {config.remote.url}")
    if config.remote.user_id:
        typer.echo(f"  User: {config.remote.user_id}")
    typer.echo(f"  Policy: {config.remote.conflict_policy}")
    typer.echo(f"  Timeout: {config.remote.timeout}s")
