"""Background task that evicts expired documents."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from .rate_limit import RateLimiter
from .registry import FileRegistry
from .utils import remove_quietly

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 10 * 60
MAX_FILE_AGE_SECONDS = 60 * 60


class CleanupScheduler:
    """
    Periodically removes records older than ``max_age_seconds`` and deletes their files.

    Records leased by an in-flight operation are skipped by the registry and
    picked up by a later cycle.
    """

    def __init__(
        self,
        registry: FileRegistry,
        interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        max_age_seconds: float = MAX_FILE_AGE_SECONDS,
        limiters: Iterable[RateLimiter] = (),
    ) -> None:
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self.limiters = list(limiters)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Cleanup task already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Started cleanup task (interval: {self.interval_seconds}s, max age: {self.max_age_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the background cleanup task."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped cleanup task")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}", exc_info=True)

    def run_once(self, now: Optional[float] = None) -> int:
        """
        Execute one cleanup cycle.

        Returns:
            Number of records evicted
        """
        evicted = self.registry.evict_expired(self.max_age_seconds, now=now)
        for record in evicted:
            try:
                remove_quietly(Path(record.path))
            except OSError as e:
                logger.warning(f"Could not delete file for expired record {record.id}: {e}")
            logger.info(f"Evicted expired file {record.id} ({record.name})")

        for limiter in self.limiters:
            limiter.cleanup()

        if evicted:
            logger.info(f"Cleanup cycle complete: {len(evicted)} expired file(s) removed")
        else:
            logger.debug("Cleanup cycle complete: nothing expired")
        return len(evicted)
