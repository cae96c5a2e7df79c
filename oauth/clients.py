"""Client registry and scope catalog.

Both are static configuration: built once at startup and only read after
that. Clients are frozen dataclasses so nothing in the flow can modify them.
"""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

IMPLICIT = "implicit"
AUTHORIZATION_CODE = "authorization_code"
CLIENT_CREDENTIALS = "client_credentials"
GRANT_TYPES = frozenset({IMPLICIT, AUTHORIZATION_CODE, CLIENT_CREDENTIALS})

# response_type (as a set of words) -> grant type
RESPONSE_TYPES = {
    frozenset({"code"}): AUTHORIZATION_CODE,
    frozenset({"token"}): IMPLICIT,
    frozenset({"id_token"}): IMPLICIT,
    frozenset({"id_token", "token"}): IMPLICIT,
}


def hash_secret(secret: str) -> str:
    """Base64 SHA-256 of a client secret."""
    return base64.b64encode(hashlib.sha256(secret.encode()).digest()).decode()


@dataclass(frozen=True)
class Scope:
    name: str
    display_name: str
    claims: tuple = ()
    identity: bool = True
    required: bool = False


DEFAULT_SCOPES = (
    Scope("openid", "Your user identifier", claims=("sub",), required=True),
    Scope("profile", "User profile", claims=(
        "name", "given_name", "family_name", "preferred_username", "website",
    )),
    Scope("email", "Your email address", claims=("email", "email_verified")),
    Scope("fake-api-1", "Access to fake-api-1", identity=False),
)


class ScopeCatalog:
    """Known scopes and the user claims each one releases."""

    def __init__(self, scopes: Iterable[Scope] = DEFAULT_SCOPES):
        self._scopes = {s.name: s for s in scopes}

    def get(self, name: str) -> Optional[Scope]:
        return self._scopes.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._scopes

    def names(self) -> list[str]:
        return list(self._scopes)

    def claims_for(self, scopes: Iterable[str]) -> list[str]:
        claims = []
        for name in scopes:
            scope = self._scopes.get(name)
            if scope and scope.identity:
                claims.extend(c for c in scope.claims if c not in claims)
        return claims

    def api_scopes(self, scopes: Iterable[str]) -> list[str]:
        return [s for s in scopes if s in self._scopes and not self._scopes[s].identity]


@dataclass(frozen=True)
class Client:
    client_id: str
    grant_types: frozenset
    allowed_scopes: frozenset
    redirect_uris: frozenset = frozenset()
    post_logout_redirect_uris: frozenset = frozenset()
    allowed_cors_origins: frozenset = frozenset()
    secret_hash: Optional[str] = None
    client_name: Optional[str] = None
    require_consent: bool = True
    require_pkce: bool = False
    allow_access_tokens_via_browser: bool = False
    access_token_lifetime: int = 3600

    @property
    def is_confidential(self) -> bool:
        return self.secret_hash is not None

    @property
    def display_name(self) -> str:
        return self.client_name or self.client_id

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in self.grant_types

    def allows_redirect(self, redirect_uri: str) -> bool:
        # Exact string comparison, no normalisation
        return redirect_uri in self.redirect_uris

    def verify_secret(self, secret: Optional[str]) -> bool:
        if not self.secret_hash or secret is None:
            return False
        return hmac.compare_digest(hash_secret(secret), self.secret_hash)

    @classmethod
    def from_dict(cls, data: dict) -> "Client":
        grant_types = frozenset(data.get("grant_types", ()))
        unknown = grant_types - GRANT_TYPES
        if unknown:
            raise ValueError(f"Unknown grant types for {data.get('client_id')}: {sorted(unknown)}")

        secret_hash = data.get("secret_hash")
        if not secret_hash and data.get("secret"):
            secret_hash = hash_secret(data["secret"])

        return cls(
            client_id=data["client_id"],
            grant_types=grant_types,
            allowed_scopes=frozenset(data.get("allowed_scopes", ())),
            redirect_uris=frozenset(data.get("redirect_uris", ())),
            post_logout_redirect_uris=frozenset(data.get("post_logout_redirect_uris", ())),
            allowed_cors_origins=frozenset(data.get("allowed_cors_origins", ())),
            secret_hash=secret_hash,
            client_name=data.get("client_name"),
            require_consent=data.get("require_consent", True),
            require_pkce=data.get("require_pkce", False),
            allow_access_tokens_via_browser=data.get("allow_access_tokens_via_browser", False),
            access_token_lifetime=int(data.get("access_token_lifetime", 3600)),
        )


DEFAULT_CLIENTS = [
    {
        "client_id": "foo-client-001",
        "grant_types": [CLIENT_CREDENTIALS],
        "secret_hash": hash_secret("apisleutel"),
        "allowed_scopes": ["fake-api-1"],
    },
    {
        "client_id": "angular-spa-001",
        "client_name": "Angular SPA",
        "grant_types": [IMPLICIT],
        "allow_access_tokens_via_browser": True,
        "allowed_scopes": ["openid", "profile", "email"],
        "allowed_cors_origins": ["http://localhost:4200"],
        "redirect_uris": ["http://localhost:4200/", "http://localhost:4200/silent-refresh.html"],
        "post_logout_redirect_uris": ["http://localhost:4200/"],
    },
]


class ClientRegistry:
    """Read-only lookup table of registered clients."""

    def __init__(self, clients: Iterable[Client]):
        self._clients: dict[str, Client] = {}
        for client in clients:
            if client.client_id in self._clients:
                raise ValueError(f"Duplicate client_id: {client.client_id}")
            self._clients[client.client_id] = client

    def get(self, client_id: str) -> Optional[Client]:
        return self._clients.get(client_id)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def __iter__(self):
        return iter(self._clients.values())

    def __len__(self) -> int:
        return len(self._clients)

    def cors_origins(self) -> list[str]:
        origins = set()
        for client in self._clients.values():
            origins.update(client.allowed_cors_origins)
        return sorted(origins)

    @classmethod
    def from_dicts(cls, entries: Iterable[dict]) -> "ClientRegistry":
        return cls(Client.from_dict(e) for e in entries)

    @classmethod
    def from_file(cls, path) -> "ClientRegistry":
        """Load clients from a JSON file holding a list of client objects."""
        with open(Path(path), "r") as f:
            entries = json.load(f)
        registry = cls.from_dicts(entries)
        logger.info(f"[STARTUP] Loaded {len(registry)} clients from {path}")
        return registry


def default_registry() -> ClientRegistry:
    return ClientRegistry.from_dicts(DEFAULT_CLIENTS)
