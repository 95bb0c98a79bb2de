# read_analytics/ratelimit.py
import asyncio
import logging
import time
from typing import Optional

from read_analytics.config import READ_RATE_LIMIT_WINDOW, RATE_LIMIT_TIMEOUT_SECONDS
from read_analytics.logs import log_event

GUEST = "guest"
UNKNOWN_IP = "0.0.0.0"


def read_key(ip: Optional[str], reader_id: Optional[str], article_id: str) -> str:
    return f"read:{ip or UNKNOWN_IP}:{reader_id or GUEST}:{article_id}"


class MemoryRateLimiter:
    """
    Fixed window per key, state lokal per proses.
    Deployment multi-instance bisa under-suppress; itu masih bisa diterima.
    """

    def __init__(self, window: float = READ_RATE_LIMIT_WINDOW, clock=time.monotonic):
        self.window = window
        self.clock = clock
        self._windows = {}  # key -> waktu window dibuka

    async def allow(self, key: str) -> bool:
        now = self.clock()
        opened = self._windows.get(key)
        if opened is not None and now - opened < self.window:
            return False
        self._windows[key] = now
        self._prune(now)
        return True

    def _prune(self, now: float):
        if len(self._windows) < 1024:
            return
        for key, opened in list(self._windows.items()):
            if now - opened >= self.window:
                del self._windows[key]


class RedisRateLimiter:
    """
    Counter terpusat: SET key NX EX window.
    Dipanggil di jalur read, jadi setiap call dibatasi `timeout`; Redis error
    atau lambat -> izinkan (fail open).
    """

    def __init__(self, redis_client, window: int = READ_RATE_LIMIT_WINDOW, prefix: str = "ratelimit:",
                 timeout: float = RATE_LIMIT_TIMEOUT_SECONDS):
        self.r = redis_client
        self.window = window
        self.prefix = prefix
        self.timeout = timeout

    async def allow(self, key: str) -> bool:
        try:
            ok = await asyncio.wait_for(
                self.r.set(self.prefix + key, 1, ex=self.window, nx=True), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            log_event("rate_limit_unavailable", level=logging.WARNING,
                      error=f"timeout after {self.timeout}s")
            return True
        except Exception as e:
            log_event("rate_limit_unavailable", level=logging.WARNING, error=str(e))
            return True
        return bool(ok)
