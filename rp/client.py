"""Relying-party client for the provider's implicit flow.

Usage:
    client = RelyingPartyClient(issuer, "angular-spa-001", "http://localhost:4200/")
    client.load_discovery_document()
    url = client.create_login_url()      # send the browser here
    tokens = client.try_login(callback)  # callback URL or its fragment

A response is only accepted when its ``state`` matches the pending request
and the id token is signed by the provider for this client with the
expected ``nonce``. Anything else raises; nothing is retried.
"""
import base64
import hashlib
import logging
import secrets
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
import jwt

from rp.storage import MemoryTokenStorage, PendingLogin, TokenSet, TokenStorage

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("openid", "profile", "email")
CLOCK_SKEW = 30  # seconds


class RelyingPartyError(Exception):
    """Base class for rejected discovery or login responses."""


class DiscoveryRequired(RelyingPartyError):
    pass


class DiscoveryError(RelyingPartyError):
    pass


class AuthorizationFailed(RelyingPartyError):
    """The provider answered with an error instead of tokens."""

    def __init__(self, error: str, description: str = None):
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)


class StateMismatch(RelyingPartyError):
    pass


class NonceMismatch(RelyingPartyError):
    pass


class InvalidIdToken(RelyingPartyError):
    pass


def _at_hash(access_token: str) -> str:
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


def parse_response(url_or_fragment: str) -> dict:
    """Parameters from a callback URL, its fragment or a bare parameter string."""
    value = url_or_fragment or ""
    if "#" in value:
        value = value.split("#", 1)[1]
    elif "://" in value:
        value = urlsplit(value).query
    elif value.startswith("?"):
        value = value[1:]
    return dict(parse_qsl(value, keep_blank_values=True))


class RelyingPartyClient:
    def __init__(
        self,
        issuer: str,
        client_id: str,
        redirect_uri: str,
        scopes=DEFAULT_SCOPES,
        post_logout_redirect_uri: str = None,
        storage: TokenStorage = None,
        http_client: httpx.Client = None,
    ):
        self.issuer = issuer.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = tuple(scopes)
        self.post_logout_redirect_uri = post_logout_redirect_uri
        self.storage = storage or MemoryTokenStorage()
        self.http = http_client or httpx.Client(timeout=10.0)
        self.discovery = None
        self.jwks = None

    # ============== Discovery ==============

    def load_discovery_document(self) -> dict:
        """Fetch provider metadata and signing keys.

        Raises:
            DiscoveryError: If the endpoint fails or reports another issuer
        """
        url = f"{self.issuer}/.well-known/openid-configuration"
        try:
            response = self.http.get(url)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryError(f"Could not load discovery document from {url}: {e}") from e

        if document.get("issuer", "").rstrip("/") != self.issuer:
            raise DiscoveryError(f"Discovery issuer {document.get('issuer')!r} does not match {self.issuer!r}")

        try:
            response = self.http.get(document["jwks_uri"])
            response.raise_for_status()
            self.jwks = jwt.PyJWKSet.from_dict(response.json())
        except (KeyError, httpx.HTTPError, ValueError, jwt.PyJWKSetError) as e:
            raise DiscoveryError(f"Could not load signing keys: {e}") from e

        self.discovery = document
        logger.info(f"[RP] Loaded discovery document for {self.issuer}")
        return document

    def _endpoint(self, name: str) -> str:
        if not self.discovery:
            raise DiscoveryRequired("Call load_discovery_document() first")
        return self.discovery[name]

    # ============== Login ==============

    def create_login_url(self, response_type: str = "id_token token", prompt: str = None) -> str:
        """Start a login: remember a fresh state and nonce, return the URL."""
        endpoint = self._endpoint("authorization_endpoint")
        pending = PendingLogin(
            state=secrets.token_urlsafe(24),
            nonce=secrets.token_urlsafe(24),
            created_at=int(time.time()),
        )
        self.storage.save_pending(pending)

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": response_type,
            "scope": " ".join(self.scopes),
            "state": pending.state,
            "nonce": pending.nonce,
        }
        if prompt:
            params["prompt"] = prompt
        return f"{endpoint}?{urlencode(params)}"

    def try_login(self, url_or_fragment: str) -> TokenSet:
        """Validate an authorization response and store its tokens.

        Raises:
            StateMismatch: No pending login, or ``state`` missing or different.
                Checked first; the pending login is kept
            AuthorizationFailed: The response carries an ``error``
            NonceMismatch: The id token's nonce is not the pending one
            InvalidIdToken: Missing id token, bad signature, issuer, audience
                or at_hash
        """
        params = parse_response(url_or_fragment)
        pending = self.storage.read_pending()

        received_state = params.get("state")
        if pending is None or not received_state or not secrets.compare_digest(received_state, pending.state):
            logger.warning("[RP] Rejected response: state mismatch")
            raise StateMismatch("The response state does not match the pending login")

        if "error" in params:
            self.storage.clear_pending()
            logger.warning(f"[RP] Authorization failed: {params['error']}")
            raise AuthorizationFailed(params["error"], params.get("error_description"))

        id_token = params.get("id_token")
        if not id_token:
            raise InvalidIdToken("The response has no id_token")
        access_token = params.get("access_token")

        claims = self._verify_id_token(id_token)
        if claims.get("nonce") != pending.nonce:
            logger.warning("[RP] Rejected response: nonce mismatch")
            raise NonceMismatch("The id_token nonce does not match the pending login")
        if access_token and claims.get("at_hash") != _at_hash(access_token):
            raise InvalidIdToken("at_hash does not match the access token")

        expires_in = int(params.get("expires_in") or 0)
        tokens = TokenSet(
            access_token=access_token,
            id_token=id_token,
            token_type=params.get("token_type", "Bearer"),
            expires_at=int(time.time()) + expires_in,
            scope=params.get("scope", ""),
            claims=claims,
        )
        self.storage.clear_pending()
        self.storage.save(tokens)
        logger.info(f"[RP] Logged in as {claims.get('sub')} with scope {tokens.scope}")
        return tokens

    def _verify_id_token(self, id_token: str) -> dict:
        if self.jwks is None:
            raise DiscoveryRequired("Call load_discovery_document() first")
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
            key = self.jwks[kid]
            return jwt.decode(
                id_token,
                key.key,
                algorithms=self.discovery.get("id_token_signing_alg_values_supported", ["RS256"]),
                audience=self.client_id,
                issuer=self.issuer,
                leeway=CLOCK_SKEW,
                options={"require": ["exp", "iat", "sub"]},
            )
        except KeyError as e:
            raise InvalidIdToken("The id_token is signed with an unknown key") from e
        except jwt.InvalidTokenError as e:
            raise InvalidIdToken(f"Invalid id_token: {e}") from e

    # ============== Stored tokens ==============

    def get_access_token(self) -> Optional[str]:
        tokens = self.storage.read()
        if tokens is None or tokens.is_expired():
            return None
        return tokens.access_token

    def get_identity_claims(self) -> Optional[dict]:
        tokens = self.storage.read()
        return dict(tokens.claims) if tokens else None

    def fetch_userinfo(self) -> dict:
        access_token = self.get_access_token()
        if not access_token:
            raise RelyingPartyError("Not logged in")
        response = self.http.get(
            self._endpoint("userinfo_endpoint"), headers={"Authorization": f"Bearer {access_token}"}
        )
        response.raise_for_status()
        return response.json()

    def logout_url(self, state: str = None) -> str:
        params = {}
        tokens = self.storage.read()
        if tokens and tokens.id_token:
            params["id_token_hint"] = tokens.id_token
        else:
            params["client_id"] = self.client_id
        if self.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.post_logout_redirect_uri
        if state:
            params["state"] = state
        return f"{self._endpoint('end_session_endpoint')}?{urlencode(params)}"

    def clear(self) -> None:
        self.storage.clear()
