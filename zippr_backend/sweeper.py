"""Age-based retention for stored archives.

The sweeper lists the store, derives each archive's creation time from its
id, and deletes what is older than max_age_seconds. It sweeps as soon as it
starts and then every interval_seconds, as a background asyncio task.

Invariants:
    - Sweeps never overlap (one lock per sweeper, held for the whole pass)
    - Ids that do not parse into a timestamp are kept, not deleted
    - A failed delete is logged and the pass continues; the next cycle retries
    - Nothing is raised out of the background loop
    - stop() lets an in-progress sweep finish before returning
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable

from .identifiers import parse_created_at
from .store import ArchiveStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 3600.0
DEFAULT_INTERVAL_SECONDS = 3600.0
DEFAULT_STOP_TIMEOUT_SECONDS = 30.0


class RetentionSweeper:
    def __init__(
        self,
        store: ArchiveStore,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_age_seconds = max(0.0, float(max_age_seconds))
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self.sweep_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_expired(self, archive_id: str, now: float) -> bool:
        created_at = parse_created_at(archive_id)
        if created_at is None:
            return False
        return (now - created_at) > self.max_age_seconds

    def sweep_once(self) -> int:
        """Delete every expired archive. Returns the number deleted."""
        with self._sweep_lock:
            now = self._clock()
            try:
                ids = self.store.list_ids()
            except Exception as e:
                logger.error("Failed to list archives: %s", e, exc_info=True)
                self.sweep_count += 1
                return 0
            deleted = 0
            for archive_id in sorted(ids):
                if parse_created_at(archive_id) is None:
                    logger.warning("Skipping archive with unparseable id: %s", archive_id)
                    continue
                if not self.is_expired(archive_id, now):
                    continue
                try:
                    self.store.delete(archive_id)
                except Exception as e:
                    logger.error("Failed to delete archive %s: %s", archive_id, e, exc_info=True)
                    continue
                deleted += 1
                logger.info("Deleted expired archive: %s", archive_id)
            self.sweep_count += 1
        if deleted:
            logger.info("Sweep removed %d of %d archives", deleted, len(ids))
        return deleted

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep_once)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Sweep error: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self.is_running:
            logger.warning("Retention sweeper already running")
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event))
        logger.info(
            "Starting retention sweeper",
            extra={"max_age_seconds": self.max_age_seconds, "interval_seconds": self.interval_seconds},
        )
        return self._task

    async def stop(self, timeout: float | None = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        """Stop the periodic sweep.

        A sweep already in progress is allowed to finish (up to timeout
        seconds) before the task ends, so no deletes happen after stop()
        returns. Past the timeout the task is cancelled; the worker thread of
        that sweep cannot be interrupted and completes on its own.
        """
        task = self._task
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Sweep still running after %ss, cancelling", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Stopped retention sweeper")
