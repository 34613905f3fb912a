from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from tradersmind.config import Settings
from tradersmind.services.artifact_registry import ArtifactRegistry
from tradersmind.services.day_cache import DayKeyedCache
from tradersmind.services.thread_directory import ThreadDirectory

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Day-rollover cache sweep and periodic statistics, independent of retention."""

    def __init__(
        self,
        settings: Settings,
        registry: ArtifactRegistry,
        caches: Sequence[DayKeyedCache],
        threads: ThreadDirectory,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.caches = list(caches)
        self.threads = threads
        self._task: asyncio.Task | None = None
        self._last_stats = 0.0

    def sweep_once(self) -> int:
        swept = sum(cache.sweep_expired() for cache in self.caches)
        expired_threads = self.threads.expire_stale()
        if swept or expired_threads:
            logger.info("Maintenance swept %d cache entries and %d thread handles", swept, expired_threads)
        return swept

    def log_stats(self) -> None:
        stats = self.registry.stats()
        logger.info(
            "Bot statistics: tracked=%d by_kind=%s cache_keys=%d %s active_threads=%d",
            stats.total,
            stats.by_kind,
            stats.total_cache_keys,
            " ".join(f"{cache.name.replace(' ', '_')}={len(cache)}" for cache in self.caches),
            len(self.threads),
        )

    async def run_forever(self) -> None:
        interval = max(60, self.settings.cache_sweep_interval_minutes * 60)
        stats_interval = max(60, self.settings.stats_log_interval_minutes * 60)
        self._last_stats = time.monotonic()
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_once()
                if time.monotonic() - self._last_stats >= stats_interval:
                    self.log_stats()
                    self._last_stats = time.monotonic()
            except Exception:
                logger.exception("Maintenance pass failed")

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run_forever(), name="cache-maintenance")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._task.done():
            self._task = None
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
