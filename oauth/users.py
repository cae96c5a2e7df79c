"""User stores: credential checks behind one small interface.

The authorization flow only ever calls ``authenticate``. Swapping the
in-memory test store for the Supabase backend does not touch the flow.
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    subject_id: str
    username: str
    claims: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StaticUser:
    subject_id: str
    username: str
    password: str
    claims: dict = field(default_factory=dict)


DEFAULT_TEST_USERS = (
    StaticUser(
        subject_id="fake-guid-123",
        username="mary",
        password="Secret123!",
        claims={
            "name": "Mary",
            "preferred_username": "mary",
            "email": "mary@example.com",
            "email_verified": True,
        },
    ),
)


class UserStore:
    """Interface for credential backends."""

    def authenticate(self, username: str, password: str) -> Optional[User]:
        """Return the user for valid credentials, None otherwise."""
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    """Hardcoded test users, for development and tests."""

    def __init__(self, users: Iterable[StaticUser] = DEFAULT_TEST_USERS):
        self._users = {u.username: u for u in users}

    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self._users.get(username)
        if user is None or not hmac.compare_digest(user.password.encode(), password.encode()):
            return None
        return User(subject_id=user.subject_id, username=user.username, claims=dict(user.claims))


class SupabaseUserStore(UserStore):
    """Checks credentials against Supabase Auth (email + password)."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def authenticate(self, username: str, password: str) -> Optional[User]:
        try:
            response = self.supabase.auth.sign_in_with_password({
                "email": username,
                "password": password,
            })
        except Exception as e:
            # Supabase raises on bad credentials; the caller only sees "no user"
            logger.info(f"[LOGIN] Supabase sign-in rejected: {type(e).__name__}")
            return None

        if not response or not response.user:
            return None

        supabase_user = response.user
        metadata = getattr(supabase_user, "user_metadata", None) or {}
        claims = {
            "email": supabase_user.email,
            "email_verified": bool(getattr(supabase_user, "email_confirmed_at", None)),
            "preferred_username": supabase_user.email,
        }
        if metadata.get("name"):
            claims["name"] = metadata["name"]
        return User(subject_id=supabase_user.id, username=supabase_user.email, claims=claims)
