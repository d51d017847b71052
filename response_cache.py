from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

LOGGER = logging.getLogger("weather_proxy.cache")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: object
    expires_at: float


class ResponseCache:
    """Process-wide key/value store with a per-entry TTL."""

    def __init__(
        self,
        default_ttl_seconds: float = 600.0,
        check_period_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = float(default_ttl_seconds)
        self.check_period_seconds = float(check_period_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._guard = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper_guard = threading.Lock()
        self._sweeper_thread: threading.Thread | None = None
        self._sweeper_stop = threading.Event()

    def get(self, key: str) -> object | None:
        now = self._clock()
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if now >= entry.expires_at:
                self._entries.pop(key, None)
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: object, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl}")
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        with self._guard:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._guard:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def sweep(self) -> int:
        now = self._clock()
        with self._guard:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                self._entries.pop(key, None)
        if expired:
            LOGGER.debug("Cache sweep evicted=%d", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._guard:
            return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def start_background_sweep(self) -> None:
        with self._sweeper_guard:
            if self._sweeper_thread is not None and self._sweeper_thread.is_alive():
                return
            self._sweeper_stop.clear()
            self._sweeper_thread = threading.Thread(
                target=self._sweep_loop,
                name="cache-sweep",
                daemon=True,
            )
            self._sweeper_thread.start()
            LOGGER.info("Started cache sweep thread period=%.0fs", self.check_period_seconds)

    def stop_background_sweep(self) -> None:
        with self._sweeper_guard:
            self._sweeper_stop.set()
            self._sweeper_thread = None
        LOGGER.info("Stopped cache sweep thread")

    def _sweep_loop(self) -> None:
        while not self._sweeper_stop.wait(self.check_period_seconds):
            try:
                self.sweep()
            except Exception:
                LOGGER.exception("Cache sweep failed")
