"""In-memory stores shared by the OAuth components.

Access and identity tokens are JWTs (stateless) and are never stored; they
are validated via signature verification. What is stored here is the
short-lived state of the flow itself: per-key locks and authorization codes.
"""

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

# Authorization codes live for 5 minutes
AUTH_CODE_TTL = 300


class KeyedLocks:
    """One mutex per key.

    Writers for different keys never block each other. The guard lock is only
    held while looking up (or creating) the lock for a key.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    def __call__(self, key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def discard(self, key) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    subject_id: str
    scopes: tuple
    nonce: Optional[str] = None
    claims: dict = field(default_factory=dict)
    auth_time: Optional[int] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    expires_at: float = 0.0

    def is_expired(self, now: float = None) -> bool:
        return (now or time.time()) > self.expires_at


class AuthorizationCodeStore:
    """Single-use authorization codes.

    A code is removed the first time it is redeemed, so two concurrent
    exchanges of the same code cannot both succeed.
    """

    def __init__(self, ttl: int = AUTH_CODE_TTL):
        self.ttl = ttl
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def create(self, **kwargs) -> AuthorizationCode:
        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            expires_at=time.time() + self.ttl,
            **kwargs,
        )
        with self._lock:
            now = time.time()
            expired = [c for c, ac in self._codes.items() if ac.expires_at < now]
            for c in expired:
                del self._codes[c]
            self._codes[code.code] = code
        return code

    def redeem(self, code: str) -> Optional[AuthorizationCode]:
        """Remove and return the code, or None if unknown or expired."""
        with self._lock:
            entry = self._codes.pop(code, None)
        if entry is None or entry.is_expired():
            return None
        return entry

    def __len__(self) -> int:
        return len(self._codes)
