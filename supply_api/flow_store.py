"""
Store for pending authorization attempts (state + PKCE verifier) between
/auth/login and /auth/callback. Keyed by the flow id held in the browser's
auth_flow cookie. Entries expire after a TTL so abandoned logins do not pile up.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class AuthorizationAttempt:
    state: str
    code_verifier: str
    created_at: float = field(default_factory=time.monotonic)


class FlowStore(Protocol):
    def put(self, key: str, attempt: AuthorizationAttempt, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> AuthorizationAttempt | None: ...

    def delete(self, key: str) -> None: ...


class InMemoryFlowStore:
    """Process-local FlowStore. Fine for a single worker; use a shared cache otherwise."""

    def __init__(self) -> None:
        self._pending: dict[str, tuple[AuthorizationAttempt, float]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, attempt: AuthorizationAttempt, ttl_seconds: int) -> None:
        with self._lock:
            self._clean_expired()
            self._pending[key] = (attempt, time.monotonic() + ttl_seconds)

    def get(self, key: str) -> AuthorizationAttempt | None:
        with self._lock:
            entry = self._pending.get(key)
            if entry is None:
                return None
            attempt, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._pending[key]
                return None
            return attempt

    def delete(self, key: str) -> None:
        with self._lock:
            self._pending.pop(key, None)

    def __len__(self) -> int:
        return len(self._pending)

    def _clean_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._pending.items() if now >= exp]
        for k in expired:
            del self._pending[k]
