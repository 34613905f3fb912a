from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Protocol, Sequence

from tradersmind.config import Settings
from tradersmind.errors import ArtifactValidationError, ForbiddenError, NotFoundError, PlatformError
from tradersmind.schemas import CleanupReport, RetentionStatus
from tradersmind.services.artifact_registry import ArtifactRegistry, TrackedArtifact
from tradersmind.services.day_cache import DayKeyedCache
from tradersmind.services.discord_client import ThreadHandle, is_system_message, message_created_at
from tradersmind.services.thread_directory import ThreadDirectory, is_bot_thread_name

logger = logging.getLogger(__name__)


class RetentionPlatform(Protocol):
    async def current_user_id(self) -> str: ...

    async def fetch_message(self, channel_id: str, message_id: str) -> Dict[str, Any]: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def delete_thread(self, thread_id: str) -> None: ...

    async def list_active_threads(self, channel_id: str) -> List[ThreadHandle]: ...

    async def list_archived_threads(self, channel_id: str) -> List[ThreadHandle]: ...

    async def fetch_recent_messages(self, channel_id: str, limit: int = 10) -> List[Dict[str, Any]]: ...


class StepStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"  # fatal to this artifact only


@dataclass
class StepResult:
    step: str
    status: StepStatus
    reason: str = ""

    @property
    def failed(self) -> bool:
        return self.status in {StepStatus.RECOVERABLE, StepStatus.FATAL}


@dataclass
class ArtifactCleanup:
    artifact_id: str
    steps: List[StepResult] = field(default_factory=list)
    cache_released: int = 0
    thread_released: bool = False

    def add(self, result: StepResult) -> StepResult:
        self.steps.append(result)
        return result

    @property
    def deleted(self) -> bool:
        return any(item.step == "delete" and not item.failed for item in self.steps)

    @property
    def failed(self) -> bool:
        return any(item.failed for item in self.steps)


@dataclass
class CleanupSummary:
    cycle: int
    started_at: datetime
    artifacts: List[ArtifactCleanup] = field(default_factory=list)
    tracking_swept: int = 0
    orphan_sweep_ran: bool = False
    orphan_threads_deleted: int = 0
    duration_ms: float = 0.0

    @property
    def deleted(self) -> int:
        return sum(1 for item in self.artifacts if item.deleted)

    @property
    def errors(self) -> int:
        return sum(1 for item in self.artifacts if item.failed)

    @property
    def cache_released(self) -> int:
        return sum(item.cache_released for item in self.artifacts)

    @property
    def threads_released(self) -> int:
        return sum(1 for item in self.artifacts if item.thread_released)

    def to_report(self) -> CleanupReport:
        return CleanupReport(
            cycle=self.cycle,
            started_at=self.started_at.isoformat(),
            duration_ms=round(self.duration_ms, 2),
            expired=len(self.artifacts),
            deleted=self.deleted,
            errors=self.errors,
            cache_released=self.cache_released,
            threads_released=self.threads_released,
            tracking_swept=self.tracking_swept,
            orphan_threads_deleted=self.orphan_threads_deleted,
            orphan_sweep_ran=self.orphan_sweep_ran,
        )


def _platform_step(step: str, exc: PlatformError) -> StepResult:
    if isinstance(exc, NotFoundError):
        return StepResult(step, StepStatus.OK, "already gone")
    if isinstance(exc, ForbiddenError):
        return StepResult(step, StepStatus.FATAL, f"forbidden: {exc}")
    return StepResult(step, StepStatus.RECOVERABLE, str(exc))


def _is_recent_user_message(message: Dict[str, Any], bot_id: str, now: datetime, window: timedelta) -> bool:
    if is_system_message(message):
        return False
    if str((message.get("author") or {}).get("id")) == bot_id:
        return False
    created = message_created_at(message)
    return created is not None and now - created < window


class RetentionService:
    """Reclaims expired bot artifacts on a fixed interval.

    A single asyncio task drives the ticks, and ticks triggered manually share
    the same lock, so two cleanups never overlap. Each artifact is cleaned up
    independently and is always untracked at the end, whatever happened on
    the platform side.
    """

    def __init__(
        self,
        settings: Settings,
        platform: RetentionPlatform,
        registry: ArtifactRegistry,
        caches: Sequence[DayKeyedCache],
        threads: ThreadDirectory | None = None,
    ) -> None:
        self.settings = settings
        self.platform = platform
        self.registry = registry
        self.caches = list(caches)
        self.threads = threads
        self.cycle_count = 0
        self.interval_minutes: int | None = None
        self.last_summary: CleanupSummary | None = None
        self.last_run_at: datetime | None = None
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_minutes: int | None = None) -> None:
        if self.running:
            logger.warning("RetentionService is already running")
            return
        self.interval_minutes = max(1, int(interval_minutes or self.settings.cleanup_interval_minutes))
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_forever(self._stop_event), name="retention-cleanup")
        logger.info(
            "Started RetentionService (interval=%d min, retention=%.2f h, safety margin=%.2f h)",
            self.interval_minutes,
            self.settings.message_retention_hours,
            self.settings.retention_safety_margin_hours,
        )

    async def stop(self) -> None:
        if self._task is None:
            logger.warning("RetentionService is not running")
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            # Let an in-flight tick finish; the loop exits at its next wait.
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._stop_event = None
        logger.info("RetentionService stopped")

    async def _run_forever(self, stop_event: asyncio.Event) -> None:
        interval = (self.interval_minutes or self.settings.cleanup_interval_minutes) * 60
        while not stop_event.is_set():
            await self.run_cleanup()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def trigger_cleanup_now(self) -> CleanupSummary | None:
        logger.info("Manual cleanup triggered")
        return await self.run_cleanup()

    async def run_cleanup(self) -> CleanupSummary | None:
        async with self._tick_lock:
            try:
                return await self._tick()
            except Exception:
                logger.exception("Retention cleanup tick failed")
                return None

    async def _tick(self) -> CleanupSummary:
        self.cycle_count += 1
        started = time.perf_counter()
        now = self.registry.now()
        summary = CleanupSummary(cycle=self.cycle_count, started_at=now)

        expired = self.registry.expired(now, self.settings.retention)
        if expired:
            logger.info("Processing %d expired artifacts (cycle %d)", len(expired), self.cycle_count)
        for artifact in expired:
            summary.artifacts.append(await self.cleanup_artifact(artifact))

        summary.tracking_swept = self.registry.sweep_stale(
            self.registry.now(),
            self.settings.retention,
            self.settings.safety_margin,
        )

        if self.cycle_count % max(1, self.settings.orphan_sweep_every) == 0:
            summary.orphan_sweep_ran = True
            summary.orphan_threads_deleted = await self.sweep_orphan_threads()

        summary.duration_ms = (time.perf_counter() - started) * 1000
        self.last_summary = summary
        self.last_run_at = now
        logger.info(
            "Retention cleanup cycle %d: expired=%d deleted=%d errors=%d cache_released=%d "
            "threads_released=%d tracking_swept=%d orphans_deleted=%d",
            summary.cycle,
            len(summary.artifacts),
            summary.deleted,
            summary.errors,
            summary.cache_released,
            summary.threads_released,
            summary.tracking_swept,
            summary.orphan_threads_deleted,
        )
        return summary

    async def cleanup_artifact(self, artifact: TrackedArtifact) -> ArtifactCleanup:
        result = ArtifactCleanup(artifact_id=artifact.artifact_id)
        try:
            result.add(await self._delete_platform_message(artifact))
            result.add(self._release_cache(artifact, result))
            result.add(await self._release_thread(artifact, result))
        except Exception as exc:
            logger.exception("Unexpected failure cleaning up artifact %s", artifact.artifact_id)
            result.add(StepResult("unexpected", StepStatus.RECOVERABLE, str(exc)))
        finally:
            self.registry.untrack(artifact.artifact_id)
        for step in result.steps:
            if step.failed:
                logger.warning(
                    "Cleanup of %s %s: %s step %s (%s)",
                    artifact.kind.value,
                    artifact.artifact_id,
                    step.step,
                    step.status.value,
                    step.reason,
                )
        return result

    async def _delete_platform_message(self, artifact: TrackedArtifact) -> StepResult:
        if artifact.ephemeral:
            return StepResult("delete", StepStatus.SKIPPED, "ephemeral; expires on the platform")
        if not artifact.conversation_id:
            err = ArtifactValidationError(f"artifact {artifact.artifact_id} has no conversation id")
            return StepResult("delete", StepStatus.RECOVERABLE, str(err))
        try:
            await self.platform.fetch_message(artifact.conversation_id, artifact.artifact_id)
            await self.platform.delete_message(artifact.conversation_id, artifact.artifact_id)
        except PlatformError as exc:
            return _platform_step("delete", exc)
        logger.debug("Deleted %s %s", artifact.kind.value, artifact.artifact_id)
        return StepResult("delete", StepStatus.OK)

    def _release_cache(self, artifact: TrackedArtifact, result: ArtifactCleanup) -> StepResult:
        if not artifact.cache_keys:
            return StepResult("cache", StepStatus.SKIPPED, "no cache keys")
        released = 0
        unmatched: List[str] = []
        for key in artifact.cache_keys:
            owners = [cache for cache in self.caches if cache.owns(key)]
            if not owners:
                unmatched.append(key)
                continue
            for cache in owners:
                if cache.release(key):
                    released += 1
        result.cache_released = released
        if released:
            logger.debug(
                "Released %d cache entries for %s (ticker=%s)",
                released,
                artifact.artifact_id,
                artifact.ticker,
            )
        if unmatched:
            return StepResult("cache", StepStatus.RECOVERABLE, f"no cache owns keys {unmatched}")
        return StepResult("cache", StepStatus.OK)

    async def _release_thread(self, artifact: TrackedArtifact, result: ArtifactCleanup) -> StepResult:
        owner_id = artifact.owner_id
        thread_id = artifact.thread_id
        if not owner_id or not thread_id:
            return StepResult("thread", StepStatus.SKIPPED, "no owner thread")

        def has_live(user_id: str) -> bool:
            return self.registry.has_live_artifacts(user_id, thread_id=thread_id, exclude=artifact.artifact_id)

        if self.threads is not None:
            safe = self.threads.remove_if_safe(owner_id, has_live, thread_id=thread_id)
        else:
            safe = not has_live(owner_id)
        if not safe:
            return StepResult("thread", StepStatus.SKIPPED, "thread still referenced")

        try:
            await self.platform.delete_thread(thread_id)
        except PlatformError as exc:
            step = _platform_step("thread", exc)
            result.thread_released = step.status == StepStatus.OK
            return step
        result.thread_released = True
        logger.debug("Deleted thread %s for user %s", thread_id, owner_id)
        return StepResult("thread", StepStatus.OK)

    async def sweep_orphan_threads(self) -> int:
        """Delete archived bot threads nothing references any more."""
        conversations = self.registry.parent_conversation_ids()
        if self.threads is not None:
            conversations |= self.threads.known_parents()
        if not conversations:
            return 0
        try:
            bot_id = await self.platform.current_user_id()
        except PlatformError as exc:
            logger.warning("Skipping orphan thread sweep: %s", exc)
            return 0

        deleted = 0
        for conversation_id in sorted(conversations):
            try:
                deleted += await self._sweep_conversation(conversation_id, bot_id)
            except PlatformError as exc:
                logger.warning("Orphan thread sweep failed for %s: %s", conversation_id, exc)
        if deleted:
            logger.info("Orphan thread sweep deleted %d threads", deleted)
        return deleted

    async def _sweep_conversation(self, conversation_id: str, bot_id: str) -> int:
        threads: Dict[str, ThreadHandle] = {}
        for handle in await self.platform.list_active_threads(conversation_id):
            threads[handle.id] = handle
        for handle in await self.platform.list_archived_threads(conversation_id):
            threads[handle.id] = handle

        deleted = 0
        window = self.settings.orphan_activity_window
        for handle in threads.values():
            if not is_bot_thread_name(handle.name) or handle.owner_id != bot_id:
                continue
            if self.registry.references_thread(handle.id):
                continue
            try:
                messages = await self.platform.fetch_recent_messages(handle.id, limit=10)
                now = self.registry.now()
                recent_user_activity = any(
                    _is_recent_user_message(message, bot_id, now, window) for message in messages
                )
                if recent_user_activity or not handle.archived:
                    continue
                await self.platform.delete_thread(handle.id)
            except NotFoundError:
                pass
            except PlatformError as exc:
                logger.debug("Could not sweep thread %s (%s): %s", handle.id, handle.name, exc)
                continue
            if self.threads is not None:
                self.threads.forget_thread(handle.id)
            deleted += 1
            logger.debug("Deleted orphaned thread %s (%s)", handle.id, handle.name)
        return deleted

    def untrack(self, artifact_id: str) -> None:
        self.registry.untrack(artifact_id)

    def next_run_at(self) -> datetime | None:
        if not self.running or self.last_run_at is None or self.interval_minutes is None:
            return None
        return self.last_run_at + timedelta(minutes=self.interval_minutes)

    def get_status(self) -> RetentionStatus:
        stats = self.registry.stats()
        next_run = self.next_run_at()
        return RetentionStatus(
            running=self.running,
            interval_active=self.running,
            interval_minutes=self.interval_minutes if self.running else None,
            retention_hours=self.settings.message_retention_hours,
            cycle_count=self.cycle_count,
            total_tracked=stats.total,
            by_kind=stats.by_kind,
            last_run_at=self.last_run_at.isoformat() if self.last_run_at else None,
            next_run_at=next_run.isoformat() if next_run else None,
            last_report=self.last_summary.to_report() if self.last_summary else None,
        )
