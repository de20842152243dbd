"""Sync triggers: periodic polling, on-demand requests and sync-after-change.

Triggers coalesce. A trigger that fires while an attempt is already running
is dropped rather than queued; the running attempt will pick up everything
that was there when it pulled, and the next trigger covers the rest.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from caresync.sync.protocol import SyncResult, SyncStatus

if TYPE_CHECKING:
    from caresync.storage.base import VersionStore
    from caresync.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0

ResultCallback = Callable[[SyncResult], Any]


class SyncTrigger:
    """Decides when a :class:`SyncEngine` runs.

    Args:
        engine: Engine to run
        interval: Seconds between periodic attempts; None disables polling
        store: Store to watch when ``sync_on_change`` is set
        sync_on_change: Request a sync after every committed local write
        on_result: Called with the result of every attempt that ran
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: float | None = DEFAULT_INTERVAL,
        store: VersionStore | None = None,
        sync_on_change: bool = False,
        on_result: ResultCallback | None = None,
    ) -> None:
        if interval is not None and interval <= 0:
            raise ValueError("interval must be positive")
        if sync_on_change and store is None:
            raise ValueError("sync_on_change needs the store to watch")
        self._engine = engine
        self._interval = interval
        self._store = store
        self._sync_on_change = sync_on_change
        self._on_result = on_result
        self._loop_task: asyncio.Task[None] | None = None
        self._pending: asyncio.Task[SyncResult | None] | None = None
        self.completed = 0
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start polling and, if configured, listening for local changes."""
        if self._sync_on_change and self._store is not None:
            self._store.add_change_listener(self.request_sync)
        if self._interval is None or self.is_running:
            return
        self._loop_task = asyncio.create_task(self._poll_loop(self._interval))
        self._loop_task.add_done_callback(_log_loop_exception)
        logger.info("Sync trigger started: every %.1fs", self._interval)

    async def stop(self) -> None:
        """Stop polling and wait for an attempt in flight to settle."""
        if self._store is not None:
            self._store.remove_change_listener(self.request_sync)
        for task in (self._loop_task, self._pending):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._pending = None
        logger.debug("Sync trigger stopped")

    def request_sync(self) -> bool:
        """Ask for an attempt soon; False if it was coalesced away."""
        if self._busy():
            self.dropped += 1
            logger.debug("Sync request dropped: attempt already running")
            return False
        self._pending = asyncio.create_task(self.sync_now())
        return True

    async def sync_now(self) -> SyncResult | None:
        """Run one attempt now; None if it was coalesced away."""
        result = await self._engine.synchronize(wait=False)
        if result.status == SyncStatus.REJECTED:
            self.dropped += 1
            return None
        self.completed += 1
        if self._on_result is not None:
            self._on_result(result)
        return result

    def _busy(self) -> bool:
        return self._engine.is_syncing or (self._pending is not None and not self._pending.done())

    async def _poll_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._busy():
                self.dropped += 1
                continue
            try:
                await self.sync_now()
            except Exception:
                logger.error("Scheduled sync failed", exc_info=True)


def _log_loop_exception(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from the polling task."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Sync trigger loop crashed: %s", exc, exc_info=exc)
