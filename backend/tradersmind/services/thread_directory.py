from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Protocol

from tradersmind.errors import PlatformError
from tradersmind.services.discord_client import ThreadHandle

logger = logging.getLogger(__name__)

THREAD_NAME_TEMPLATE = "\U0001F4CA {name}'s Stock Charts"
THREAD_NAME_PATTERN = re.compile(r"^\U0001F4CA (.+)'s Stock Charts$")


def thread_name_for(display_name: str) -> str:
    return THREAD_NAME_TEMPLATE.format(name=display_name.strip() or "Trader")


def is_bot_thread_name(name: str) -> bool:
    return bool(THREAD_NAME_PATTERN.match(name or ""))


class ThreadPlatform(Protocol):
    async def fetch_thread(self, thread_id: str) -> ThreadHandle: ...

    async def create_thread(self, channel_id: str, name: str, archive_after_minutes: int) -> ThreadHandle: ...

    async def find_thread_created_notice(self, channel_id: str, thread_id: str) -> str | None: ...


@dataclass
class ThreadLookup:
    handle: ThreadHandle
    created_new: bool
    system_notice_id: str | None = None


@dataclass
class _Entry:
    handle: ThreadHandle
    registered_at: datetime
    expiry: asyncio.TimerHandle | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ThreadDirectory:
    """Per-user side thread, reused while it is still reachable.

    A handle is dropped when a probe fails, when the retention engine finds
    nothing left in the thread, or when the archive window elapses. The
    expiry timer is advisory: the user just gets a fresh thread next time.
    """

    def __init__(
        self,
        platform: ThreadPlatform,
        archive_after_minutes: int = 60,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.platform = platform
        self.archive_after_minutes = archive_after_minutes
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._known_parents: set[str] = set()

    async def get_or_create(self, user_id: str, display_name: str, conversation_id: str) -> ThreadLookup:
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] += 1
        try:
            async with lock:
                return await self._get_or_create_locked(user_id, display_name, conversation_id)
        finally:
            # Locks only live while someone holds or waits on them.
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] <= 0:
                del self._lock_users[user_id]
                self._user_locks.pop(user_id, None)

    async def _get_or_create_locked(self, user_id: str, display_name: str, conversation_id: str) -> ThreadLookup:
        entry = self._entries.get(user_id)
        if entry is not None:
            try:
                handle = await self.platform.fetch_thread(entry.handle.id)
                entry.handle = handle
                return ThreadLookup(handle=handle, created_new=False)
            except PlatformError as exc:
                logger.debug("Discarding stale thread %s for user %s: %s", entry.handle.id, user_id, exc)
                self._drop(user_id)

        handle = await self.platform.create_thread(
            conversation_id,
            thread_name_for(display_name),
            self.archive_after_minutes,
        )
        if not handle.parent_id:
            handle.parent_id = conversation_id
        self._register(user_id, handle)

        notice_id: str | None = None
        try:
            notice_id = await self.platform.find_thread_created_notice(conversation_id, handle.id)
        except PlatformError as exc:
            logger.debug("Could not look up thread-created notice for %s: %s", handle.id, exc)

        logger.info("Created thread %s for user %s in %s", handle.id, user_id, conversation_id)
        return ThreadLookup(handle=handle, created_new=True, system_notice_id=notice_id)

    def _register(self, user_id: str, handle: ThreadHandle) -> None:
        self._drop(user_id)
        entry = _Entry(handle=handle, registered_at=self._clock())
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            entry.expiry = loop.call_later(self.archive_after_minutes * 60, self._expire, user_id, handle.id)
        self._entries[user_id] = entry
        if handle.parent_id:
            self._known_parents.add(handle.parent_id)

    def _expire(self, user_id: str, thread_id: str) -> None:
        entry = self._entries.get(user_id)
        if entry is not None and entry.handle.id == thread_id:
            del self._entries[user_id]
            logger.debug("Thread handle %s for user %s expired", thread_id, user_id)

    def _drop(self, user_id: str) -> ThreadHandle | None:
        entry = self._entries.pop(user_id, None)
        if entry is None:
            return None
        if entry.expiry is not None:
            entry.expiry.cancel()
        return entry.handle

    def get(self, user_id: str) -> ThreadHandle | None:
        entry = self._entries.get(user_id)
        return entry.handle if entry else None

    def remove(self, user_id: str) -> None:
        self._drop(user_id)

    def remove_if_safe(
        self,
        user_id: str,
        has_live_artifacts: Callable[[str], bool],
        thread_id: str | None = None,
    ) -> bool:
        """Drop the user's handle unless live artifacts still need the thread.

        The predicate is evaluated now, not when the caller started its work,
        so an artifact tracked in the meantime keeps the thread alive. Returns
        True when the thread is safe to delete.
        """
        if has_live_artifacts(user_id):
            return False
        entry = self._entries.get(user_id)
        if entry is not None and (thread_id is None or entry.handle.id == thread_id):
            self._drop(user_id)
        return True

    def forget_thread(self, thread_id: str) -> None:
        for user_id, entry in list(self._entries.items()):
            if entry.handle.id == thread_id:
                self._drop(user_id)

    def expire_stale(self, now: datetime | None = None) -> int:
        """Drop handles past the archive window; backstop for missed timers."""
        cutoff = (now or self._clock()) - timedelta(minutes=self.archive_after_minutes)
        stale = [
            user_id
            for user_id, entry in self._entries.items()
            if entry.handle.archived or entry.registered_at < cutoff
        ]
        for user_id in stale:
            self._drop(user_id)
        return len(stale)

    def known_parents(self) -> set[str]:
        return set(self._known_parents)

    def close(self) -> None:
        for user_id in list(self._entries):
            self._drop(user_id)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {"active": len(self._entries), "users": sorted(self._entries), "locks": len(self._user_locks)}
