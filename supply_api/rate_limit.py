"""
Rate limiting. In-memory sliding window per key (client IP).
Applied to GET /auth/login and POST /auth/refresh. One limiter per app instance.
"""
import math
import threading
import time

from fastapi import HTTPException, Request, status

from supply_api.audit import get_client_ip

_WINDOW_SECONDS = 60


class RateLimiter:
    def __init__(self, window_seconds: int = _WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def __len__(self) -> int:
        return len(self._store)

    def check_and_consume(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1).
        """
        if limit <= 0:
            return True, None
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            timestamps = [t for t in self._store.get(key, ()) if t > cutoff]
            if len(timestamps) >= limit:
                self._store[key] = timestamps
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            self._store[key] = timestamps
            return True, None

    def _sweep(self, cutoff: float) -> None:
        """Drop keys with no request inside the window."""
        idle = [k for k, ts in self._store.items() if not ts or ts[-1] <= cutoff]
        for k in idle:
            del self._store[k]

    def enforce(self, request: Request, scope: str, limit: int) -> None:
        """Raise 429 when the caller's IP is over the limit for this scope."""
        key = f"{scope}:{get_client_ip(request) or 'unknown'}"
        allowed, retry_after = self.check_and_consume(key, limit)
        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(retry_after)},
            )
