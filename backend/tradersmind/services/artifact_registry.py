from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Tuple

from tradersmind.schemas import RegistryStats

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactKind(str, Enum):
    CHART_RESPONSE = "chart_response"
    BUTTON_PROMPT = "button_prompt"
    THREAD_SYSTEM_NOTICE = "thread_system_notice"


@dataclass(frozen=True)
class Placement:
    conversation_id: str
    thread_id: str | None = None


@dataclass(frozen=True)
class TrackedArtifact:
    """One bot-emitted side effect that must eventually be reclaimed.

    ``placement.conversation_id`` is the channel that holds the message.
    ``placement.thread_id`` is the user thread the artifact belongs to, which
    for chart responses is the same channel and for thread-created notices is
    the thread announced in the parent channel.
    """

    artifact_id: str
    kind: ArtifactKind
    placement: Placement
    created_at: datetime
    owner_id: str | None = None
    ticker: str | None = None
    tickers: Tuple[str, ...] = ()
    cache_keys: Tuple[str, ...] = ()
    ephemeral: bool = False

    @property
    def conversation_id(self) -> str:
        return self.placement.conversation_id

    @property
    def thread_id(self) -> str | None:
        return self.placement.thread_id

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


def _clean_cache_keys(artifact_id: str, cache_keys: Iterable[Any] | None) -> Tuple[str, ...]:
    keys: List[str] = []
    for raw in cache_keys or ():
        if not isinstance(raw, str) or not raw.strip():
            logger.warning("Dropping malformed cache key %r for artifact %s", raw, artifact_id)
            continue
        if raw not in keys:
            keys.append(raw)
    return tuple(keys)


class ArtifactRegistry:
    """Time-indexed map of everything the bot posted and must clean up.

    Every method is synchronous and holds the lock for its whole body, so on
    the event loop no two operations interleave, and calls made from worker
    threads are serialised as well. The retention engine is the only caller
    that removes entries in normal operation.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._artifacts: Dict[str, TrackedArtifact] = {}

    def now(self) -> datetime:
        return self._clock()

    def track(self, artifact: TrackedArtifact) -> None:
        if not artifact.artifact_id:
            logger.warning("Ignoring %s artifact without an id in %s", artifact.kind.value, artifact.conversation_id)
            return
        with self._lock:
            if artifact.artifact_id in self._artifacts:
                logger.warning("Artifact %s tracked twice; keeping the latest entry", artifact.artifact_id)
            self._artifacts[artifact.artifact_id] = artifact
        logger.debug(
            "Tracked %s %s in %s (thread=%s owner=%s keys=%d ephemeral=%s)",
            artifact.kind.value,
            artifact.artifact_id,
            artifact.conversation_id,
            artifact.thread_id,
            artifact.owner_id,
            len(artifact.cache_keys),
            artifact.ephemeral,
        )

    def track_chart_response(
        self,
        artifact_id: str,
        conversation_id: str,
        user_id: str,
        ticker: str,
        cache_keys: Iterable[Any] | None = None,
        thread_id: str | None = None,
        ephemeral: bool = False,
    ) -> TrackedArtifact:
        artifact = TrackedArtifact(
            artifact_id=artifact_id,
            kind=ArtifactKind.CHART_RESPONSE,
            placement=Placement(conversation_id=conversation_id, thread_id=thread_id),
            created_at=self.now(),
            owner_id=user_id,
            ticker=ticker,
            cache_keys=_clean_cache_keys(artifact_id, cache_keys),
            ephemeral=ephemeral,
        )
        self.track(artifact)
        return artifact

    def track_button_prompt(self, artifact_id: str, conversation_id: str, tickers: Iterable[str]) -> TrackedArtifact:
        artifact = TrackedArtifact(
            artifact_id=artifact_id,
            kind=ArtifactKind.BUTTON_PROMPT,
            placement=Placement(conversation_id=conversation_id),
            created_at=self.now(),
            tickers=tuple(tickers),
        )
        self.track(artifact)
        return artifact

    def track_thread_system_notice(
        self,
        artifact_id: str,
        conversation_id: str,
        thread_id: str,
        user_id: str,
    ) -> TrackedArtifact:
        artifact = TrackedArtifact(
            artifact_id=artifact_id,
            kind=ArtifactKind.THREAD_SYSTEM_NOTICE,
            placement=Placement(conversation_id=conversation_id, thread_id=thread_id),
            created_at=self.now(),
            owner_id=user_id,
        )
        self.track(artifact)
        return artifact

    def untrack(self, artifact_id: str) -> bool:
        with self._lock:
            removed = self._artifacts.pop(artifact_id, None)
        if removed is not None:
            logger.debug("Untracked %s %s", removed.kind.value, artifact_id)
        return removed is not None

    def get(self, artifact_id: str) -> TrackedArtifact | None:
        with self._lock:
            return self._artifacts.get(artifact_id)

    def __contains__(self, artifact_id: object) -> bool:
        with self._lock:
            return artifact_id in self._artifacts

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def all(self) -> List[TrackedArtifact]:
        with self._lock:
            return list(self._artifacts.values())

    def expired(self, now: datetime, retention: timedelta) -> List[TrackedArtifact]:
        cutoff = now - retention
        with self._lock:
            return [item for item in self._artifacts.values() if item.created_at < cutoff]

    def sweep_stale(self, now: datetime, retention: timedelta, safety_margin: timedelta) -> int:
        """Forget entries older than retention plus margin. Never touches the platform."""
        cutoff = now - (retention + safety_margin)
        with self._lock:
            stale = [key for key, item in self._artifacts.items() if item.created_at < cutoff]
            for key in stale:
                del self._artifacts[key]
        if stale:
            logger.info("Swept %d stale tracking entries older than %s", len(stale), cutoff.isoformat())
        return len(stale)

    def has_live_artifacts(
        self,
        user_id: str,
        thread_id: str | None = None,
        exclude: str | None = None,
    ) -> bool:
        with self._lock:
            for item in self._artifacts.values():
                if item.artifact_id == exclude or item.owner_id != user_id:
                    continue
                if thread_id is None or item.thread_id == thread_id:
                    return True
        return False

    def references_thread(self, thread_id: str) -> bool:
        with self._lock:
            return any(
                item.thread_id == thread_id or item.conversation_id == thread_id
                for item in self._artifacts.values()
            )

    def parent_conversation_ids(self) -> set[str]:
        """Channels that can host user threads, i.e. not threads themselves."""
        with self._lock:
            items = list(self._artifacts.values())
        thread_ids = {item.thread_id for item in items if item.thread_id}
        return {item.conversation_id for item in items if item.conversation_id and item.conversation_id not in thread_ids}

    def stats(self) -> RegistryStats:
        with self._lock:
            items = list(self._artifacts.values())
        by_kind = Counter(item.kind.value for item in items)
        return RegistryStats(
            total=len(items),
            by_kind=dict(by_kind),
            total_cache_keys=sum(len(item.cache_keys) for item in items),
        )
