import threading
import time
from collections import deque

from fastapi import Request

from app.core.config import client_ip


class SlidingWindowRateLimiter:
    """In-process limiter: at most `limit` hits per key within `window_seconds`."""

    def __init__(self, limit: int, window_seconds: int):
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def _prune(self, key: str, now: float) -> deque:
        """Drops hits outside the window; a key with none left is forgotten."""
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def _sweep(self, now: float) -> None:
        """Once per window, forget every key whose hits have all aged out."""
        if now - self._last_sweep < self.window_seconds:
            return
        for key in list(self._hits):
            self._prune(key, now)
        self._last_sweep = now

    def hit(self, key: str, now: float | None = None) -> bool:
        """Records a hit. False when the key is over its limit (the hit is not recorded)."""
        now = time.monotonic() if now is None else now
        with self._lock:
            self._sweep(now)
            hits = self._prune(key, now)
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def remaining(self, key: str, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        with self._lock:
            return max(self.limit - len(self._prune(key, now)), 0)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def rate_limit_key(request: Request, user_id: int | None = None) -> str:
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip(request)}"
