"""Token endpoint grants: authorization code exchange and client credentials."""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from oauth.clients import AUTHORIZATION_CODE, CLIENT_CREDENTIALS, Client, ClientRegistry
from oauth.errors import (
    InvalidClientCredentials,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    UnauthorizedGrantType,
    UnsupportedGrantType,
)
from oauth.stores import AuthorizationCode, AuthorizationCodeStore
from oauth.tokens import IssuedTokens, TokenIssuer

logger = logging.getLogger(__name__)


def verify_pkce(code_verifier: Optional[str], code: AuthorizationCode) -> bool:
    if not code.code_challenge:
        return True
    if not code_verifier:
        return False
    if code.code_challenge_method == "plain":
        expected = code_verifier
    else:
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(code_verifier.encode()).digest()
        ).rstrip(b"=").decode()
    return hmac.compare_digest(expected, code.code_challenge)


class TokenEndpoint:
    def __init__(self, clients: ClientRegistry, issuer: TokenIssuer, codes: AuthorizationCodeStore):
        self.clients = clients
        self.issuer = issuer
        self.codes = codes

    def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> Client:
        client = self.clients.get(client_id or "")
        if client is None:
            raise InvalidClientCredentials()
        if client.is_confidential and not client.verify_secret(client_secret):
            logger.info(f"[TOKEN] Client authentication failed: {client_id}")
            raise InvalidClientCredentials()
        return client

    def handle(self, grant_type: Optional[str], **form) -> IssuedTokens:
        if grant_type == AUTHORIZATION_CODE:
            return self.exchange_code(
                form.get("client_id"),
                form.get("client_secret"),
                form.get("code"),
                form.get("redirect_uri"),
                form.get("code_verifier"),
            )
        if grant_type == CLIENT_CREDENTIALS:
            return self.client_credentials(form.get("client_id"), form.get("client_secret"), form.get("scope"))
        raise UnsupportedGrantType()

    def exchange_code(
        self,
        client_id: str,
        client_secret: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str] = None,
    ) -> IssuedTokens:
        client = self.authenticate_client(client_id, client_secret)
        if not client.allows_grant(AUTHORIZATION_CODE):
            raise UnauthorizedGrantType()
        if not code:
            raise InvalidRequest("Missing code")

        entry = self.codes.redeem(code)
        if entry is None:
            logger.debug("[TOKEN] Invalid or expired authorization code")
            raise InvalidGrant()
        if entry.client_id != client.client_id or entry.redirect_uri != redirect_uri:
            raise InvalidGrant()
        if not verify_pkce(code_verifier, entry):
            raise InvalidGrant("PKCE verification failed")
        if not entry.code_challenge and not client.is_confidential:
            # Public clients must prove possession of the code some way
            raise InvalidGrant("PKCE is required for public clients")

        return self.issuer.issue(
            entry.subject_id,
            client,
            entry.scopes,
            nonce=entry.nonce,
            claims=entry.claims,
            auth_time=entry.auth_time,
        )

    def client_credentials(self, client_id: str, client_secret: Optional[str], scope: Optional[str]) -> IssuedTokens:
        client = self.authenticate_client(client_id, client_secret)
        if not client.is_confidential:
            raise InvalidClientCredentials()
        if not client.allows_grant(CLIENT_CREDENTIALS):
            raise UnauthorizedGrantType()

        catalog = self.issuer.scopes
        requested = (scope or "").split() or sorted(catalog.api_scopes(client.allowed_scopes))
        for name in requested:
            if name not in client.allowed_scopes or not catalog.api_scopes([name]):
                raise InvalidScope(f"Scope not allowed: {name}")
        return self.issuer.issue_client_token(client, requested)
