from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import pytest

from tradersmind.config import Settings
from tradersmind.errors import NotFoundError
from tradersmind.services.artifact_registry import ArtifactRegistry
from tradersmind.services.day_cache import chart_cache, quote_cache
from tradersmind.services.discord_client import ThreadHandle
from tradersmind.services.retention import RetentionService
from tradersmind.services.thread_directory import ThreadDirectory, thread_name_for

BOT_ID = "900000000000000001"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePlatform:
    """In-memory stand-in for the Discord client that records every call."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[..., None]] = {}
        self.threads: Dict[str, ThreadHandle] = {}
        self.active: Dict[str, List[ThreadHandle]] = {}
        self.archived: Dict[str, List[ThreadHandle]] = {}
        self.recent_messages: Dict[str, List[Dict[str, Any]]] = {}
        self.notices: Dict[str, str] = {}
        self._next_id = 1000

    def _id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook(*args)
        if name in self.errors:
            raise self.errors[name]

    def calls_to(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def current_user_id(self) -> str:
        return BOT_ID

    async def fetch_message(self, channel_id: str, message_id: str) -> Dict[str, Any]:
        self._call("fetch_message", channel_id, message_id)
        return {"id": message_id, "channel_id": channel_id}

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        self._call("delete_message", channel_id, message_id)

    async def delete_thread(self, thread_id: str) -> None:
        self._call("delete_thread", thread_id)
        self.threads.pop(thread_id, None)

    async def fetch_thread(self, thread_id: str) -> ThreadHandle:
        self._call("fetch_thread", thread_id)
        if thread_id not in self.threads:
            raise NotFoundError(f"unknown thread {thread_id}")
        return self.threads[thread_id]

    async def create_thread(self, channel_id: str, name: str, archive_after_minutes: int) -> ThreadHandle:
        self._call("create_thread", channel_id, name, archive_after_minutes)
        handle = ThreadHandle(id=self._id(), parent_id=channel_id, name=name, owner_id=BOT_ID)
        self.threads[handle.id] = handle
        self.notices[handle.id] = self._id()
        return handle

    async def find_thread_created_notice(self, channel_id: str, thread_id: str) -> str | None:
        self._call("find_thread_created_notice", channel_id, thread_id)
        return self.notices.get(thread_id)

    async def list_active_threads(self, channel_id: str) -> List[ThreadHandle]:
        self._call("list_active_threads", channel_id)
        return list(self.active.get(channel_id, []))

    async def list_archived_threads(self, channel_id: str) -> List[ThreadHandle]:
        self._call("list_archived_threads", channel_id)
        return list(self.archived.get(channel_id, []))

    async def fetch_recent_messages(self, channel_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        self._call("fetch_recent_messages", channel_id, limit)
        return list(self.recent_messages.get(channel_id, []))[:limit]

    async def send_message(self, channel_id: str, **kwargs: Any) -> Dict[str, Any]:
        self._call("send_message", channel_id, kwargs)
        return {"id": self._id(), "channel_id": channel_id}

    async def defer_interaction(self, interaction_id: str, token: str, *, ephemeral: bool = True) -> None:
        self._call("defer_interaction", interaction_id, token, ephemeral)

    async def edit_interaction_response(self, token: str, **kwargs: Any) -> Dict[str, Any]:
        self._call("edit_interaction_response", token, kwargs)
        return {"id": self._id()}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        message_retention_hours=2.0,
        retention_safety_margin_hours=4.0,
        cleanup_interval_minutes=60,
        orphan_sweep_every=6,
        thread_archive_minutes=60,
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def registry(clock: FakeClock) -> ArtifactRegistry:
    return ArtifactRegistry(clock=clock)


@pytest.fixture
def caches(clock: FakeClock):
    return quote_cache(clock=clock), chart_cache(clock=clock)


@pytest.fixture
def threads(platform: FakePlatform, clock: FakeClock) -> ThreadDirectory:
    return ThreadDirectory(platform, archive_after_minutes=60, clock=clock)


@pytest.fixture
def retention(settings, platform, registry, caches, threads) -> RetentionService:
    return RetentionService(settings, platform, registry, list(caches), threads)


@pytest.fixture
def bot_thread():
    def _make(thread_id: str, parent_id: str = "chan-1", *, archived: bool = True, owner: str = BOT_ID, name: str | None = None):
        return ThreadHandle(
            id=thread_id,
            parent_id=parent_id,
            name=name if name is not None else thread_name_for("alice"),
            owner_id=owner,
            archived=archived,
        )

    return _make
