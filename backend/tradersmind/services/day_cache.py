from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry(Generic[T]):
    ticker: str
    day: date
    payload: T
    timestamp: datetime


class DayKeyedCache(Generic[T]):
    """Map of ``(ticker, calendar day)`` to a payload, valid for that day only.

    Keys are ``"<prefix><TICKER>_<YYYY-MM-DD>"`` in the UTC calendar, so the
    quote cache uses ``AAPL_2024-01-01`` and the chart cache uses
    ``chart_AAPL_2024-01-01``. Entries from a previous day are treated as
    absent on read and removed by :meth:`sweep_expired`.
    """

    def __init__(self, name: str, prefix: str = "", clock: Callable[[], datetime] = _utc_now) -> None:
        self.name = name
        self.prefix = prefix
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry[T]] = {}

    def today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    def key_for(self, ticker: str, day: date | None = None) -> str:
        return f"{self.prefix}{ticker.strip().upper()}_{(day or self.today()).isoformat()}"

    def owns(self, cache_key: str) -> bool:
        if self.prefix:
            return cache_key.startswith(self.prefix)
        # The unprefixed cache must not claim keys that carry another layer's prefix.
        head = cache_key.split("_", 1)[0]
        return bool(head) and head == head.upper()

    def get(self, ticker: str) -> T | None:
        today = self.today()
        key = self.key_for(ticker, today)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.day != today:
                return None
            return entry.payload

    def put(self, ticker: str, payload: T) -> str:
        now = self._clock()
        today = now.astimezone(timezone.utc).date()
        key = self.key_for(ticker, today)
        with self._lock:
            self._entries[key] = CacheEntry(ticker=ticker.strip().upper(), day=today, payload=payload, timestamp=now)
        logger.debug("Cached %s entry %s", self.name, key)
        return key

    def release(self, cache_key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(cache_key, None)
        if removed is not None:
            logger.debug("Released %s entry %s", self.name, cache_key)
        return removed is not None

    def sweep_expired(self) -> int:
        today = self.today()
        with self._lock:
            dead = [key for key, entry in self._entries.items() if entry.day != today]
            for key in dead:
                del self._entries[key]
        if dead:
            logger.info("Swept %d expired %s entries", len(dead), self.name)
        return len(dead)

    def __contains__(self, cache_key: object) -> bool:
        with self._lock:
            return cache_key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            keys = sorted(self._entries)
        return {"name": self.name, "size": len(keys), "keys": keys}


def quote_cache(clock: Callable[[], datetime] = _utc_now) -> DayKeyedCache:
    return DayKeyedCache("quote cache", prefix="", clock=clock)


def chart_cache(clock: Callable[[], datetime] = _utc_now) -> DayKeyedCache:
    return DayKeyedCache("chart cache", prefix="chart_", clock=clock)
