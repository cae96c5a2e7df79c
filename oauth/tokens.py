"""Identity and access token issuance.

Tokens are RS256 JWTs produced with PyJWT. They are never stored: validity is
signature + expiry, so anyone holding the JWKS can verify them.

The signing key is loaded (or generated) once at startup and kept for the
process lifetime. Rotation happens by building a new KeySet with
``KeySet.rotated``: the previous active key stays in the set as a retiring
key, so tokens it signed remain verifiable until they expire.
"""

import base64
import hashlib
import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from config import SIGNING_KEY_FILE
from oauth.clients import Client, ScopeCatalog
from oauth.errors import SigningFailure

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "RS256"
ID_TOKEN_LIFETIME = 5 * 60  # 5 minutes
MAX_TOKEN_LIFETIME = 60 * 60  # 1 hour

ACCESS_TOKEN_TYPE = "at+jwt"
ID_TOKEN_TYPE = "JWT"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _int_b64url(value: int) -> str:
    return _b64url(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def token_hash(token: str) -> str:
    """Left half of the SHA-256 digest, as used for at_hash / c_hash."""
    digest = hashlib.sha256(token.encode("ascii")).digest()
    return _b64url(digest[: len(digest) // 2])


@dataclass(frozen=True)
class SigningKey:
    kid: str
    public_key: Any
    private_key: Any = None

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def public_jwk(self) -> dict:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": JWT_ALGORITHM,
            "kid": self.kid,
            "n": _int_b64url(numbers.n),
            "e": _int_b64url(numbers.e),
        }

    def private_pem(self) -> str:
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("utf-8")

    @classmethod
    def generate(cls, kid: str = None) -> "SigningKey":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        return cls.from_private_key(private_key, kid)

    @classmethod
    def from_private_key(cls, private_key, kid: str = None) -> "SigningKey":
        public_key = private_key.public_key()
        return cls(kid=kid or _thumbprint(public_key), public_key=public_key, private_key=private_key)

    @classmethod
    def from_pem(cls, pem: str, kid: str = None) -> "SigningKey":
        private_key = serialization.load_pem_private_key(pem.encode(), password=None)
        return cls.from_private_key(private_key, kid)


def _thumbprint(public_key) -> str:
    # RFC 7638 thumbprint, so the kid survives restarts with the same key
    numbers = public_key.public_numbers()
    canonical = '{"e":"%s","kty":"RSA","n":"%s"}' % (_int_b64url(numbers.e), _int_b64url(numbers.n))
    return _b64url(hashlib.sha256(canonical.encode()).digest())


@dataclass(frozen=True)
class KeySet:
    """The active signing key plus keys that only verify."""

    active: SigningKey
    retiring: tuple = ()

    def __post_init__(self):
        if not self.active.can_sign:
            raise ValueError("The active key must include a private key")

    def find(self, kid: Optional[str]) -> Optional[SigningKey]:
        for key in (self.active, *self.retiring):
            if key.kid == kid:
                return key
        return None

    def jwks(self) -> dict:
        return {"keys": [k.public_jwk() for k in (self.active, *self.retiring)]}

    def rotated(self, new_key: SigningKey) -> "KeySet":
        return KeySet(active=new_key, retiring=(self.active, *self.retiring))

    def without(self, kid: str) -> "KeySet":
        """Drop a retiring key once every token it signed has expired."""
        return KeySet(active=self.active, retiring=tuple(k for k in self.retiring if k.kid != kid))


def load_or_create_signing_key(path: Path = SIGNING_KEY_FILE) -> SigningKey:
    """Get the signing key from env or file, or create and save one.

    SIGNING_KEY_PEM wins over the file so deployments can inject the key.
    A generated key is written with owner-only permissions so tokens stay
    valid across restarts.
    """
    env_pem = os.getenv("SIGNING_KEY_PEM")
    if env_pem:
        logger.info("[JWT] Using SIGNING_KEY_PEM from environment")
        return SigningKey.from_pem(env_pem)

    path = Path(path)
    if path.exists():
        try:
            key = SigningKey.from_pem(path.read_text())
            logger.info(f"[JWT] Loaded signing key {key.kid} from file")
            return key
        except (IOError, ValueError) as e:
            logger.warning(f"[JWT] Could not read signing key from {path}: {e}")

    key = SigningKey.generate()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(key.private_pem())
        os.chmod(path, 0o600)  # Owner read/write only
        logger.info(f"[JWT] Generated and saved new signing key {key.kid}")
    except IOError as e:
        logger.warning(f"[JWT] Could not save signing key to file: {e}")
    return key


def load_key_set(path: Path = SIGNING_KEY_FILE, retiring_paths: Iterable = ()) -> KeySet:
    retiring = []
    for retiring_path in retiring_paths:
        retiring.append(SigningKey.from_pem(Path(retiring_path).read_text()))
    return KeySet(active=load_or_create_signing_key(path), retiring=tuple(retiring))


@dataclass(frozen=True)
class IssuedTokens:
    expires_in: int
    scope: str
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: str = "Bearer"

    def to_params(self) -> dict:
        """Response parameters, in the order they appear in the redirect."""
        params = {}
        if self.id_token:
            params["id_token"] = self.id_token
        if self.access_token:
            params["access_token"] = self.access_token
        params["token_type"] = self.token_type
        params["expires_in"] = str(self.expires_in)
        params["scope"] = self.scope
        return params


class TokenIssuer:
    def __init__(
        self,
        issuer: str,
        key_set: KeySet,
        scopes: ScopeCatalog = None,
        max_lifetime: int = MAX_TOKEN_LIFETIME,
        id_token_lifetime: int = ID_TOKEN_LIFETIME,
    ):
        self.issuer = issuer.rstrip("/")
        self.key_set = key_set
        self.scopes = scopes or ScopeCatalog()
        self.max_lifetime = max_lifetime
        self.id_token_lifetime = id_token_lifetime

    def lifetime_for(self, client: Client, requested: int = None) -> int:
        lifetime = requested or client.access_token_lifetime
        return max(1, min(lifetime, client.access_token_lifetime, self.max_lifetime))

    def issue(
        self,
        subject_id: str,
        client: Client,
        scopes: Iterable[str],
        nonce: str = None,
        claims: dict = None,
        lifetime: int = None,
        response_types: Iterable[str] = ("id_token", "token"),
        auth_time: int = None,
    ) -> IssuedTokens:
        """Sign the tokens for a user-facing grant.

        Args:
            subject_id: The user's stable identifier
            client: The audience
            scopes: Granted scopes (already checked against consent)
            nonce: Echoed into the id_token when given
            claims: The user's attributes; only those released by the
                granted identity scopes end up in the tokens
            lifetime: Requested access token lifetime, capped by the client
                and the server maximum
            response_types: Which of "id_token" / "token" to produce

        Raises:
            SigningFailure: If signing fails; nothing partial is returned
        """
        scopes = list(scopes)
        response_types = set(response_types)
        expires_in = self.lifetime_for(client, lifetime)
        now = int(time.time())

        released = self.released_claims(scopes, claims)

        access_token = None
        if "token" in response_types:
            payload = self._access_claims(subject_id, client, scopes, now, expires_in)
            payload.update(released)
            access_token = self._sign(payload, ACCESS_TOKEN_TYPE)

        id_token = None
        if "id_token" in response_types and "openid" in scopes:
            payload = {
                "iss": self.issuer,
                "sub": subject_id,
                "aud": client.client_id,
                "iat": now,
                "nbf": now,
                "exp": now + self.id_token_lifetime,
                "auth_time": auth_time or now,
            }
            if nonce:
                payload["nonce"] = nonce
            if access_token:
                payload["at_hash"] = token_hash(access_token)
            payload.update(released)
            id_token = self._sign(payload, ID_TOKEN_TYPE)

        logger.info(f"[TOKEN] Issued tokens for {subject_id} to {client.client_id}: {' '.join(scopes)}")
        return IssuedTokens(
            access_token=access_token,
            id_token=id_token,
            expires_in=expires_in,
            scope=" ".join(scopes),
        )

    def released_claims(self, scopes: Iterable[str], claims: dict = None) -> dict:
        """User attributes released by the granted identity scopes."""
        claims = claims or {}
        return {
            name: claims[name]
            for name in self.scopes.claims_for(scopes)
            if name != "sub" and name in claims
        }

    def issue_client_token(self, client: Client, scopes: Iterable[str], lifetime: int = None) -> IssuedTokens:
        """Access token for the client itself (client credentials grant)."""
        scopes = list(scopes)
        expires_in = self.lifetime_for(client, lifetime)
        access_token = self._sign(
            self._access_claims(None, client, scopes, int(time.time()), expires_in), ACCESS_TOKEN_TYPE
        )
        logger.info(f"[TOKEN] Issued client token to {client.client_id}: {' '.join(scopes)}")
        return IssuedTokens(access_token=access_token, expires_in=expires_in, scope=" ".join(scopes))

    def _access_claims(self, subject_id, client: Client, scopes: list, now: int, expires_in: int) -> dict:
        api_scopes = self.scopes.api_scopes(scopes)
        payload = {
            "iss": self.issuer,
            "aud": [client.client_id, *api_scopes] if api_scopes else client.client_id,
            "client_id": client.client_id,
            "scope": scopes,
            "iat": now,
            "nbf": now,
            "exp": now + expires_in,
            "jti": secrets.token_urlsafe(16),
        }
        if subject_id:
            payload["sub"] = subject_id
        return payload

    def _sign(self, payload: dict, typ: str) -> str:
        key = self.key_set.active
        try:
            return jwt.encode(
                payload, key.private_key, algorithm=JWT_ALGORITHM, headers={"kid": key.kid, "typ": typ}
            )
        except Exception as e:
            logger.exception("[JWT] Signing failed")
            raise SigningFailure() from e

    def verify(
        self, token: str, audience: str = None, token_type: str = None, allow_expired: bool = False
    ) -> Optional[dict]:
        """Verify a token signed by any key in the set.

        ``allow_expired`` is for hints such as id_token_hint at logout, where
        the token only identifies the client and user.

        Returns:
            The decoded payload if valid, None otherwise.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            logger.debug(f"[JWT] Malformed token: {e}")
            return None

        if token_type and header.get("typ") != token_type:
            logger.debug("[JWT] Unexpected token type")
            return None

        key = self.key_set.find(header.get("kid"))
        if key is None:
            logger.debug("[JWT] Unknown signing key")
            return None

        try:
            return jwt.decode(
                token,
                key.public_key,
                algorithms=[JWT_ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                options={
                    "require": ["exp", "iat"],
                    "verify_aud": audience is not None,
                    "verify_exp": not allow_expired,
                },
            )
        except jwt.ExpiredSignatureError:
            logger.debug("[JWT] Token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug(f"[JWT] Invalid token: {e}")
            return None

    def verify_access_token(self, token: str, audience: str = None) -> Optional[dict]:
        return self.verify(token, audience=audience, token_type=ACCESS_TOKEN_TYPE)
