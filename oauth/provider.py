"""Wiring of the provider components.

Everything here is built once at startup and shared by reference; none of
it is replaced while the process runs.
"""

import logging
from dataclasses import dataclass

from oauth.authorize import AuthorizationEndpoint
from oauth.clients import ClientRegistry, ScopeCatalog
from oauth.consent import ConsentLedger
from oauth.grants import TokenEndpoint
from oauth.sessions import SESSION_LIFETIME, SessionAuthenticator
from oauth.stores import AuthorizationCodeStore
from oauth.tokens import MAX_TOKEN_LIFETIME, KeySet, TokenIssuer
from oauth.users import UserStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Provider:
    issuer_url: str
    clients: ClientRegistry
    scopes: ScopeCatalog
    sessions: SessionAuthenticator
    consents: ConsentLedger
    issuer: TokenIssuer
    codes: AuthorizationCodeStore
    authorization: AuthorizationEndpoint
    tokens: TokenEndpoint
    cookie_secure: bool = False


def build_provider(
    issuer_url: str,
    clients: ClientRegistry,
    users: UserStore,
    key_set: KeySet,
    scopes: ScopeCatalog = None,
    session_lifetime: int = SESSION_LIFETIME,
    max_token_lifetime: int = MAX_TOKEN_LIFETIME,
    cookie_secure: bool = False,
) -> Provider:
    scopes = scopes or ScopeCatalog()
    sessions = SessionAuthenticator(users, lifetime=session_lifetime)
    consents = ConsentLedger()
    issuer = TokenIssuer(issuer_url, key_set, scopes, max_lifetime=max_token_lifetime)
    codes = AuthorizationCodeStore()
    logger.info(f"[STARTUP] Provider {issuer.issuer} with {len(clients)} clients, signing key {key_set.active.kid}")
    return Provider(
        issuer_url=issuer.issuer,
        clients=clients,
        scopes=scopes,
        sessions=sessions,
        consents=consents,
        issuer=issuer,
        codes=codes,
        authorization=AuthorizationEndpoint(clients, sessions, consents, issuer, codes, scopes),
        tokens=TokenEndpoint(clients, issuer, codes),
        cookie_secure=cookie_secure,
    )
