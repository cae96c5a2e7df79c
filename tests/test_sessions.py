"""Tests for sessions, the consent ledger, users and the in-memory stores."""
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from oauth.consent import ConsentLedger
from oauth.errors import ExpiredSession, InvalidCredentials
from oauth.sessions import SessionAuthenticator
from oauth.stores import AuthorizationCodeStore, KeyedLocks
from oauth.users import InMemoryUserStore, SupabaseUserStore


@pytest.fixture
def sessions():
    return SessionAuthenticator(InMemoryUserStore())


# ---------------------------------------------------------------------------
# SessionAuthenticator
# ---------------------------------------------------------------------------

class TestAuthenticate:
    def test_valid_credentials(self, sessions):
        user = sessions.authenticate("mary", "Secret123!")
        assert user.subject_id == "fake-guid-123"
        assert user.claims["email"] == "mary@example.com"

    @pytest.mark.parametrize("username,password", [
        ("mary", "wrong"),
        ("nobody", "Secret123!"),
        ("", "Secret123!"),
        ("mary", ""),
    ])
    def test_invalid_credentials_same_message(self, sessions, username, password):
        with pytest.raises(InvalidCredentials) as exc:
            sessions.authenticate(username, password)
        assert exc.value.description == "Invalid username or password"


class TestSessions:
    def test_establish_and_lookup(self, sessions):
        user = sessions.authenticate("mary", "Secret123!")
        session = sessions.establish(user, persistent=True)

        assert sessions.current_session(session.session_id) == session
        assert session.expires_at - session.created_at == 8 * 60 * 60
        assert session.persistent

    def test_unknown_or_missing_id(self, sessions):
        assert sessions.current_session(None) is None
        assert sessions.current_session("") is None
        assert sessions.current_session("no-such-session") is None

    def test_expired_session_raises_once_then_gone(self):
        sessions = SessionAuthenticator(InMemoryUserStore(), lifetime=0)
        session = sessions.establish(sessions.authenticate("mary", "Secret123!"))

        with pytest.raises(ExpiredSession):
            sessions.current_session(session.session_id)
        assert sessions.current_session(session.session_id) is None
        assert len(sessions) == 0

    def test_end(self, sessions):
        session = sessions.establish(sessions.authenticate("mary", "Secret123!"))
        assert sessions.end(session.session_id) == session
        assert sessions.current_session(session.session_id) is None
        assert sessions.end(session.session_id) is None

    def test_session_ids_are_unique(self, sessions):
        user = sessions.authenticate("mary", "Secret123!")
        ids = {sessions.establish(user).session_id for _ in range(20)}
        assert len(ids) == 20

    def test_unknown_ids_leave_no_locks(self, sessions):
        for _ in range(1000):
            assert sessions.current_session(secrets.token_hex(8)) is None
            assert sessions.end(secrets.token_hex(8)) is None
        assert len(sessions._locks) == 0

    def test_ended_and_expired_sessions_release_locks(self):
        sessions = SessionAuthenticator(InMemoryUserStore(), lifetime=0)
        user = sessions.authenticate("mary", "Secret123!")
        expired = sessions.establish(user)
        ended = sessions.establish(user)

        with pytest.raises(ExpiredSession):
            sessions.current_session(expired.session_id)
        sessions.end(ended.session_id)

        assert len(sessions._locks) == 0


# ---------------------------------------------------------------------------
# ConsentLedger
# ---------------------------------------------------------------------------

class TestConsentLedger:
    def test_no_entry_means_no_consent(self):
        assert not ConsentLedger().has_consent("s", "c", ["openid"])

    def test_grant_covers_subsets(self):
        ledger = ConsentLedger()
        ledger.grant("s", "c", ["openid", "profile"], remember=True)
        assert ledger.has_consent("s", "c", ["openid"])
        assert ledger.has_consent("s", "c", ["openid", "profile"])
        assert not ledger.has_consent("s", "c", ["openid", "email"])
        assert not ledger.has_consent("s", "other", ["openid"])

    def test_upsert_replaces(self):
        ledger = ConsentLedger()
        ledger.grant("s", "c", ["openid", "profile"], remember=True)
        ledger.grant("s", "c", ["openid"], remember=True)
        assert ledger.get("s", "c").scopes == frozenset({"openid"})
        assert len(ledger.grants_for("s")) == 1

    def test_revoke(self):
        ledger = ConsentLedger()
        ledger.grant("s", "c", ["openid"], remember=True)
        assert ledger.revoke("s", "c")
        assert not ledger.revoke("s", "c")
        assert not ledger.has_consent("s", "c", ["openid"])

    def test_discard_transient_keeps_remembered(self):
        ledger = ConsentLedger()
        ledger.grant("s", "kept", ["openid"], remember=True)
        ledger.grant("s", "once", ["openid"], remember=False)

        ledger.discard_transient("s", "kept")
        ledger.discard_transient("s", "once")

        assert ledger.has_consent("s", "kept", ["openid"])
        assert not ledger.has_consent("s", "once", ["openid"])

    def test_concurrent_grants_for_different_subjects(self):
        ledger = ConsentLedger()

        def grant(i):
            ledger.grant(f"subject-{i}", "c", ["openid"], remember=True)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(grant, range(100)))

        assert all(ledger.has_consent(f"subject-{i}", "c", ["openid"]) for i in range(100))


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class TestKeyedLocks:
    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks("a") is locks("a")
        assert locks("a") is not locks("b")

    def test_discard(self):
        locks = KeyedLocks()
        first = locks("a")
        locks.discard("a")
        locks.discard("missing")
        assert len(locks) == 0
        assert locks("a") is not first

    def test_other_keys_do_not_block(self):
        locks = KeyedLocks()
        acquired = threading.Event()
        with locks("a"):
            thread = threading.Thread(target=lambda: locks("b").acquire() and acquired.set())
            thread.start()
            thread.join(timeout=2)
        assert acquired.is_set()


class TestAuthorizationCodeStore:
    def test_redeem_once(self):
        store = AuthorizationCodeStore()
        code = store.create(client_id="c", redirect_uri="r", subject_id="s", scopes=("openid",))
        assert store.redeem(code.code) == code
        assert store.redeem(code.code) is None

    def test_expired_code(self):
        store = AuthorizationCodeStore(ttl=-1)
        code = store.create(client_id="c", redirect_uri="r", subject_id="s", scopes=("openid",))
        assert store.redeem(code.code) is None

    def test_expired_codes_purged_on_create(self):
        store = AuthorizationCodeStore(ttl=-1)
        store.create(client_id="c", redirect_uri="r", subject_id="s", scopes=())
        store.ttl = 300
        store.create(client_id="c", redirect_uri="r", subject_id="s", scopes=())
        assert len(store) == 1

    def test_concurrent_redeem_single_winner(self):
        store = AuthorizationCodeStore()
        code = store.create(client_id="c", redirect_uri="r", subject_id="s", scopes=())
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(store.redeem, [code.code] * 16))
        assert sum(r is not None for r in results) == 1


# ---------------------------------------------------------------------------
# Supabase user store
# ---------------------------------------------------------------------------

class TestSupabaseUserStore:
    def test_sign_in_maps_claims(self):
        supabase = MagicMock()
        supabase.auth.sign_in_with_password.return_value.user = MagicMock(
            id="uuid-1",
            email="ann@example.com",
            email_confirmed_at="2024-01-01T00:00:00Z",
            user_metadata={"name": "Ann"},
        )

        user = SupabaseUserStore(supabase).authenticate("ann@example.com", "pw")

        supabase.auth.sign_in_with_password.assert_called_once_with(
            {"email": "ann@example.com", "password": "pw"}
        )
        assert user.subject_id == "uuid-1"
        assert user.claims == {
            "email": "ann@example.com",
            "email_verified": True,
            "preferred_username": "ann@example.com",
            "name": "Ann",
        }

    def test_rejected_sign_in_returns_none(self):
        supabase = MagicMock()
        supabase.auth.sign_in_with_password.side_effect = RuntimeError("Invalid login credentials")
        assert SupabaseUserStore(supabase).authenticate("ann@example.com", "bad") is None

    def test_session_authenticator_hides_backend_error(self):
        supabase = MagicMock()
        supabase.auth.sign_in_with_password.side_effect = RuntimeError("boom")
        sessions = SessionAuthenticator(SupabaseUserStore(supabase))
        with pytest.raises(InvalidCredentials):
            sessions.authenticate("ann@example.com", "bad")


def test_session_expiry_uses_clock():
    sessions = SessionAuthenticator(InMemoryUserStore(), lifetime=60)
    session = sessions.establish(sessions.authenticate("mary", "Secret123!"))
    assert not session.is_expired()
    assert session.is_expired(now=time.time() + 61)
