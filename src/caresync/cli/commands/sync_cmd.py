"""Sync, watch, status and serve commands."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Any

import typer

from caresync.cli._helpers import fail, get_config, get_store, output_result, run_async
from caresync.errors import SyncError
from caresync.sync.client import HTTPRemote
from caresync.sync.document_endpoint import DocumentStoreEndpoint
from caresync.sync.policy import ConflictResolutionPolicy, policy_from_name
from caresync.sync.protocol import RemoteEndpoint, SyncResult
from caresync.sync.scheduler import SyncTrigger
from caresync.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


async def _sync_documents(
    store_name: str | None,
    db_path: Path,
    user_id: str,
    device_id: str,
    conflict_policy: ConflictResolutionPolicy,
) -> tuple[str, SyncResult]:
    store = await get_store(store_name)
    endpoint = DocumentStoreEndpoint(
        db_path, user_id=user_id, device_id=device_id, conflict_policy=conflict_policy
    )
    await endpoint.initialize()
    try:
        result = await SyncEngine(store, endpoint).synchronize(wait=True)
    finally:
        await endpoint.close()
    return endpoint.identity, result


async def _sync_http(
    store_name: str | None, remote: HTTPRemote, timeout: float
) -> tuple[str, SyncResult]:
    store = await get_store(store_name)
    async with remote:
        engine = SyncEngine(store, remote, pull_timeout=timeout, push_timeout=timeout)
        result = await engine.synchronize(wait=True)
    return remote.identity, result


def sync(
    remote_url: Annotated[
        str | None, typer.Option("--remote", "-r", help="Remote base URL (default: from config)")
    ] = None,
    documents: Annotated[
        Path | None,
        typer.Option("--documents", "-d", help="Sync with a document-store database file instead"),
    ] = None,
    user_id: Annotated[
        str | None, typer.Option("--user", "-u", help="Tenant on the remote")
    ] = None,
    policy: Annotated[
        str | None,
        typer.Option("--policy", "-p", help="Conflict policy: keep-remote or keep-device"),
    ] = None,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Pull and push timeout in seconds")
    ] = None,
    store_name: Annotated[
        str | None, typer.Option("--store", "-s", help="Local store (default: current)")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Synchronize the local store with its remote.

    Examples:
        caresync sync
        caresync sync --remote http://localhost:8000 --user alice
        caresync sync --documents shared.db --user alice
        caresync sync --policy keep-device --json
    """
    config = get_config()
    policy_name = policy or config.remote.conflict_policy
    tenant = user_id if user_id is not None else (config.remote.user_id or None)
    try:
        conflict_policy = policy_from_name(policy_name)
    except ValueError as e:
        fail(str(e))

    if documents is not None:
        device_id = config.device.id
        identity, result = run_async(
            _sync_documents(store_name, documents, tenant or "default", device_id, conflict_policy)
        )
    else:
        url = remote_url or config.remote.url
        if not url:
            fail("No remote configured. Use 'caresync config set-remote <url>' or --remote.")
        effective_timeout = timeout or config.remote.timeout
        try:
            remote = HTTPRemote(
                url,
                user_id=tenant,
                timeout=effective_timeout,
                ca_file=config.remote.ca_file or None,
                conflict_policy=conflict_policy,
            )
        except ValueError as e:
            fail(str(e))
        identity, result = run_async(_sync_http(store_name, remote, effective_timeout))

    data: dict[str, Any] = result.to_dict()
    if result.ok:
        data["message"] = (
            f"Synced with {identity}: pulled {result.pulled}, "
            f"applied {result.applied}, pushed {result.pushed}"
        )
        if result.conflicts:
            data["warnings"] = [f"Resolved {len(result.conflicts)} conflict(s) with {policy_name}"]

    output_result(data, json_output or config.json_output)
    if data.get("error"):
        raise typer.Exit(1)


def watch(
    remote_url: Annotated[
        str | None, typer.Option("--remote", "-r", help="Remote base URL (default: from config)")
    ] = None,
    documents: Annotated[
        Path | None,
        typer.Option("--documents", "-d", help="Sync with a document-store database file instead"),
    ] = None,
    user_id: Annotated[
        str | None, typer.Option("--user", "-u", help="Tenant on the remote")
    ] = None,
    interval: Annotated[
        float | None,
        typer.Option("--interval", "-i", help="Seconds between attempts (default: from config)"),
    ] = None,
    count: Annotated[
        int | None, typer.Option("--count", "-n", help="Stop after this many attempts")
    ] = None,
    store_name: Annotated[
        str | None, typer.Option("--store", "-s", help="Local store (default: current)")
    ] = None,
) -> None:
    """Keep syncing on a timer, and after local writes if configured.

    Examples:
        caresync watch
        caresync watch --interval 30
        caresync watch --documents shared.db --count 3
    """
    config = get_config()
    period = interval if interval is not None else config.scheduler.interval
    if period <= 0:
        fail("Interval must be positive")
    if count is not None and count < 1:
        fail("Count must be at least 1")
    tenant = user_id if user_id is not None else (config.remote.user_id or None)
    try:
        conflict_policy = policy_from_name(config.remote.conflict_policy)
    except ValueError as e:
        fail(str(e))

    if documents is not None:
        remote: RemoteEndpoint = DocumentStoreEndpoint(
            documents,
            user_id=tenant or "default",
            device_id=config.device.id,
            conflict_policy=conflict_policy,
        )
    else:
        url = remote_url or config.remote.url
        if not url:
            fail("No remote configured. Use 'caresync config set-remote <url>' or --remote.")
        try:
            remote = HTTPRemote(
                url,
                user_id=tenant,
                timeout=config.remote.timeout,
                ca_file=config.remote.ca_file or None,
                conflict_policy=conflict_policy,
            )
        except ValueError as e:
            fail(str(e))

    def report(result: SyncResult) -> None:
        if result.ok:
            typer.echo(
                f"Synced with {remote.identity}: pulled {result.pulled}, "
                f"applied {result.applied}, pushed {result.pushed}"
            )
        else:
            typer.secho(f"Sync failed: {result.error}", fg=typer.colors.YELLOW, err=True)

    async def _watch() -> int:
        store = await get_store(store_name)
        finished = asyncio.Event()
        attempts = 0

        def on_result(result: SyncResult) -> None:
            nonlocal attempts
            attempts += 1
            report(result)
            if count is not None and attempts >= count:
                finished.set()

        if isinstance(remote, DocumentStoreEndpoint):
            await remote.initialize()
        elif isinstance(remote, HTTPRemote):
            await remote.connect()
        engine = SyncEngine(
            store,
            remote,
            pull_timeout=config.remote.timeout,
            push_timeout=config.remote.timeout,
        )
        trigger = SyncTrigger(
            engine,
            interval=period,
            store=store,
            sync_on_change=config.scheduler.sync_on_change,
            on_result=on_result,
        )
        trigger.start()
        try:
            await trigger.sync_now()
            await finished.wait()
        finally:
            await trigger.stop()
            if isinstance(remote, DocumentStoreEndpoint):
                await remote.close()
            elif isinstance(remote, HTTPRemote):
                await remote.disconnect()
        return attempts

    typer.echo(f"Watching {remote.identity} every {period:g}s (Ctrl+C to stop)")
    try:
        attempts = run_async(_watch())
    except KeyboardInterrupt:
        typer.echo("Stopped")
        return
    typer.echo(f"Stopped after {attempts} attempt(s)")


def status(
    remote: Annotated[
        bool, typer.Option("--remote", help="Also fetch the remote's store summary")
    ] = False,
    store_name: Annotated[
        str | None, typer.Option("--store", "-s", help="Local store (default: current)")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show local store statistics and pending changes.

    Examples:
        caresync status
        caresync status --remote --json
    """
    config = get_config()

    async def _status() -> dict[str, Any]:
        store = await get_store(store_name)
        remote_client = None
        if config.remote.url:
            remote_client = HTTPRemote(
                config.remote.url,
                user_id=config.remote.user_id or None,
                timeout=config.remote.timeout,
            )
        stats = await store.get_stats(remote_client.identity if remote_client else None)
        stats["device_id"] = config.device.id
        stats["remote_url"] = config.remote.url or None
        if remote and remote_client is not None:
            try:
                async with remote_client:
                    stats["remote"] = await remote_client.status()
            except SyncError as e:
                stats["remote_error"] = str(e)
        return stats

    output_result(run_async(_status()), json_output or config.json_output)


def serve(
    host: Annotated[
        str | None, typer.Option("--host", "-h", help="Host to bind to (default: from config)")
    ] = None,
    port: Annotated[
        int | None, typer.Option("--port", "-p", help="Port to bind to (default: from config)")
    ] = None,
    reload: Annotated[
        bool, typer.Option("--reload", "-r", help="Enable auto-reload for development")
    ] = False,
) -> None:
    """Run the revision-record sync server.

    Examples:
        caresync serve                    # Run on the configured address
        caresync serve -p 9000            # Run on port 9000
        caresync serve --host 0.0.0.0     # Expose to network
    """
    import uvicorn

    config = get_config()
    bind_host = host or config.server.host
    bind_port = port or config.server.port

    typer.echo(f"Starting caresync server on http://{bind_host}:{bind_port}")
    typer.echo(f"  Docs: http://{bind_host}:{bind_port}/docs")

    uvicorn.run(
        "caresync.server.app:create_app",
        host=bind_host,
        port=bind_port,
        reload=reload,
        factory=True,
    )
