"""Browser sessions for the authorization server.

A session is created after a successful login and referenced by an opaque
cookie. Expiry is absolute and checked on access; nothing evicts sessions in
the background.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional

from oauth.errors import ExpiredSession, InvalidCredentials
from oauth.stores import KeyedLocks
from oauth.users import User, UserStore

logger = logging.getLogger(__name__)

SESSION_COOKIE = "oidc_session"
SESSION_LIFETIME = 8 * 60 * 60  # 8 hours


@dataclass(frozen=True)
class Session:
    session_id: str
    subject_id: str
    username: str
    claims: dict = field(default_factory=dict)
    created_at: int = 0
    expires_at: int = 0
    persistent: bool = False

    def is_expired(self, now: float = None) -> bool:
        return (now or time.time()) >= self.expires_at

    @property
    def max_age(self) -> int:
        return max(0, int(self.expires_at - time.time()))


class SessionAuthenticator:
    """Maps a browser to a subject via the session cookie."""

    def __init__(self, users: UserStore, lifetime: int = SESSION_LIFETIME):
        self.users = users
        self.lifetime = lifetime
        self._sessions: dict[str, Session] = {}
        self._locks = KeyedLocks()

    def authenticate(self, username: str, password: str) -> User:
        """Check credentials with the user store.

        Raises InvalidCredentials without saying which field was wrong.
        """
        if not username or not password:
            raise InvalidCredentials()
        user = self.users.authenticate(username, password)
        if user is None:
            logger.info("[LOGIN] Invalid credentials")
            raise InvalidCredentials()
        logger.info(f"[LOGIN] User authenticated: {user.subject_id}")
        return user

    def establish(self, user: User, persistent: bool = False) -> Session:
        now = int(time.time())
        session = Session(
            session_id=secrets.token_urlsafe(32),
            subject_id=user.subject_id,
            username=user.username,
            claims=dict(user.claims),
            created_at=now,
            expires_at=now + self.lifetime,
            persistent=persistent,
        )
        with self._locks(session.session_id):
            self._sessions[session.session_id] = session
        return session

    def current_session(self, session_id: Optional[str]) -> Optional[Session]:
        """Return the live session for the cookie value.

        None for an absent or unknown id. An expired session is removed and
        ExpiredSession raised so the caller can tell the user why.
        """
        if not session_id or session_id not in self._sessions:
            return None
        with self._locks(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired():
                del self._sessions[session_id]
                self._locks.discard(session_id)
                logger.info(f"[AUTH] Session expired for {session.subject_id}")
                raise ExpiredSession()
            return session

    def end(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id or session_id not in self._sessions:
            return None
        with self._locks(session_id):
            session = self._sessions.pop(session_id, None)
        self._locks.discard(session_id)
        return session

    def __len__(self) -> int:
        return len(self._sessions)
