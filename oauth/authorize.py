"""Authorization endpoint state machine.

One call to ``AuthorizationEndpoint.authorize`` walks a single authorization
request as far as it can go:

    START -> CLIENT_VALIDATED -> LOGIN_REQUIRED | LOGIN_OK
          -> CONSENT_REQUIRED | CONSENT_OK -> TOKEN_ISSUED -> REDIRECTED

with REJECTED reachable from any step. The login and consent pages send the
browser back to the same request through its ``return_url``, so the request
parameters live in the URL and not in server memory.
"""

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from oauth.clients import (
    AUTHORIZATION_CODE,
    IMPLICIT,
    RESPONSE_TYPES,
    Client,
    ClientRegistry,
    Scope,
    ScopeCatalog,
)
from oauth.consent import ConsentLedger
from oauth.errors import (
    AccessDenied,
    ConsentRequired,
    ExpiredSession,
    InvalidRedirectUri,
    InvalidRequest,
    InvalidScope,
    LoginRequired,
    OAuthError,
    UnauthorizedGrantType,
    UnknownClient,
    UnsupportedResponseType,
)
from oauth.sessions import Session, SessionAuthenticator
from oauth.stores import AuthorizationCodeStore
from oauth.tokens import IssuedTokens, TokenIssuer

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("oidc-audit")

AUTHORIZE_PATH = "/connect/authorize"
LOGIN_PATH = "/account/login"
CONSENT_PATH = "/consent"

PKCE_METHODS = ("S256", "plain")


def _audit(event: str, **kwargs) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class FlowState(str, Enum):
    START = "start"
    CLIENT_VALIDATED = "client_validated"
    LOGIN_REQUIRED = "login_required"
    LOGIN_OK = "login_ok"
    CONSENT_REQUIRED = "consent_required"
    CONSENT_OK = "consent_ok"
    TOKEN_ISSUED = "token_issued"
    REDIRECTED = "redirected"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AuthorizationRequest:
    client_id: str = ""
    response_type: str = ""
    redirect_uri: str = ""
    scopes: tuple = ()
    state: Optional[str] = None
    nonce: Optional[str] = None
    response_mode: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    prompt: Optional[str] = None

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "AuthorizationRequest":
        scopes = []
        for name in (params.get("scope") or "").split():
            if name not in scopes:
                scopes.append(name)
        return cls(
            client_id=params.get("client_id") or "",
            response_type=params.get("response_type") or "",
            redirect_uri=params.get("redirect_uri") or "",
            scopes=tuple(scopes),
            state=params.get("state"),
            nonce=params.get("nonce"),
            response_mode=params.get("response_mode") or None,
            code_challenge=params.get("code_challenge") or None,
            code_challenge_method=params.get("code_challenge_method") or None,
            prompt=params.get("prompt") or None,
        )

    @classmethod
    def from_return_url(cls, return_url: str) -> "AuthorizationRequest":
        """Parse a return_url produced by ``return_url``.

        Only local URLs pointing at the authorization endpoint are accepted,
        anything else would make the login page an open redirector.
        """
        parts = urlsplit(return_url or "")
        if parts.scheme or parts.netloc or parts.path != AUTHORIZE_PATH:
            raise InvalidRequest("Invalid return URL")
        return cls.from_query(dict(parse_qsl(parts.query, keep_blank_values=True)))

    @property
    def response_types(self) -> frozenset:
        return frozenset(self.response_type.split())

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def to_params(self) -> dict:
        params = {
            "client_id": self.client_id,
            "response_type": self.response_type,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "nonce": self.nonce,
            "response_mode": self.response_mode,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "prompt": self.prompt,
        }
        return {k: v for k, v in params.items() if v is not None}

    @property
    def return_url(self) -> str:
        return f"{AUTHORIZE_PATH}?{urlencode(self.to_params())}"

    def with_scopes(self, scopes: Iterable[str]) -> "AuthorizationRequest":
        return dataclasses.replace(self, scopes=tuple(scopes))

    def without_prompt(self) -> "AuthorizationRequest":
        return dataclasses.replace(self, prompt=None)


@dataclass
class AuthorizationResult:
    request: AuthorizationRequest
    history: list = field(default_factory=lambda: [FlowState.START])
    client: Optional[Client] = None
    challenge_url: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[OAuthError] = None
    tokens: Optional[IssuedTokens] = None
    code: Optional[str] = None

    @property
    def state(self) -> FlowState:
        return self.history[-1]

    def advance(self, state: FlowState) -> "AuthorizationResult":
        self.history.append(state)
        return self


def build_redirect(redirect_uri: str, params: dict, mode: str) -> str:
    """Append response parameters to the client's redirect URI."""
    parts = urlsplit(redirect_uri)
    if mode == "fragment":
        return urlunsplit(parts._replace(fragment=urlencode(params)))
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def login_url(request: AuthorizationRequest, reason: str = None) -> str:
    params = {"return_url": request.return_url}
    if reason:
        params["reason"] = reason
    return f"{LOGIN_PATH}?{urlencode(params)}"


def consent_url(request: AuthorizationRequest) -> str:
    return f"{CONSENT_PATH}?{urlencode({'return_url': request.return_url})}"


class AuthorizationEndpoint:
    def __init__(
        self,
        clients: ClientRegistry,
        sessions: SessionAuthenticator,
        consents: ConsentLedger,
        issuer: TokenIssuer,
        codes: AuthorizationCodeStore = None,
        scopes: ScopeCatalog = None,
    ):
        self.clients = clients
        self.sessions = sessions
        self.consents = consents
        self.issuer = issuer
        self.codes = codes or AuthorizationCodeStore()
        self.scopes = scopes or issuer.scopes

    # --- Validation ---

    def validate(self, request: AuthorizationRequest) -> Client:
        """Check the request against the client registration.

        The client and its redirect URI are checked first; every error
        raised after that point may safely be sent to the redirect URI.
        """
        client = self.clients.get(request.client_id)
        if client is None:
            raise UnknownClient()
        if not request.redirect_uri or not client.allows_redirect(request.redirect_uri):
            raise InvalidRedirectUri()

        grant_type = RESPONSE_TYPES.get(request.response_types)
        if grant_type is None:
            raise UnsupportedResponseType()
        if not client.allows_grant(grant_type):
            raise UnauthorizedGrantType()
        if grant_type == IMPLICIT and "token" in request.response_types and not client.allow_access_tokens_via_browser:
            raise UnauthorizedGrantType("Access tokens via browser are not allowed for this client")

        if request.response_mode not in (None, "query", "fragment"):
            raise InvalidRequest("Unsupported response_mode")
        if grant_type == IMPLICIT and request.response_mode == "query":
            raise InvalidRequest("Tokens cannot be returned in the query string")

        if not request.scopes:
            raise InvalidScope("No scope requested")
        for name in request.scopes:
            if name not in client.allowed_scopes or name not in self.scopes:
                raise InvalidScope(f"Scope not allowed: {name}")

        if "id_token" in request.response_types:
            if "openid" not in request.scopes:
                raise InvalidRequest("The openid scope is required for id_token")
            if not request.nonce:
                raise InvalidRequest("A nonce is required for id_token")

        if grant_type == AUTHORIZATION_CODE:
            if request.code_challenge_method and request.code_challenge_method not in PKCE_METHODS:
                raise InvalidRequest("Unsupported code_challenge_method")
            if (client.require_pkce or not client.is_confidential) and not request.code_challenge:
                raise InvalidRequest("code_challenge is required")
        return client

    def response_mode(self, request: AuthorizationRequest) -> str:
        if request.response_mode:
            return request.response_mode
        if RESPONSE_TYPES.get(request.response_types) == IMPLICIT:
            return "fragment"
        return "query"

    def describe_scopes(self, request: AuthorizationRequest) -> list[Scope]:
        return [self.scopes.get(name) for name in request.scopes if name in self.scopes]

    # --- Flow ---

    def authorize(self, request: AuthorizationRequest, session_id: str = None) -> AuthorizationResult:
        result = AuthorizationResult(request=request)
        try:
            client = self.validate(request)
        except OAuthError as e:
            return self._reject(result, e)
        result.client = client
        result.advance(FlowState.CLIENT_VALIDATED)

        try:
            session = self.sessions.current_session(session_id)
        except ExpiredSession as e:
            session = None
            result.error = e

        if session is None or request.prompt == "login":
            if request.prompt == "none":
                return self._reject(result, result.error or LoginRequired())
            result.challenge_url = login_url(request, reason="expired" if result.error else None)
            return result.advance(FlowState.LOGIN_REQUIRED)
        result.advance(FlowState.LOGIN_OK)

        if client.require_consent and not self.consents.has_consent(
            session.subject_id, client.client_id, request.scopes
        ):
            if request.prompt == "none":
                return self._reject(result, ConsentRequired())
            result.challenge_url = consent_url(request)
            return result.advance(FlowState.CONSENT_REQUIRED)
        result.advance(FlowState.CONSENT_OK)

        try:
            return self._complete(result, client, session)
        except OAuthError as e:
            return self._reject(result, e)

    def grant_consent(
        self,
        request: AuthorizationRequest,
        session: Session,
        scopes: Iterable[str],
        remember: bool,
    ) -> AuthorizationRequest:
        """Record the user's consent and return the request to resume.

        Only scopes that were requested can be granted; required scopes are
        always kept. The returned request carries the granted scopes, which
        may be fewer than were asked for.
        """
        client = self.validate(request)
        chosen = set(scopes)
        granted = [
            name for name in request.scopes
            if name in chosen or self.scopes.get(name).required
        ]
        if not granted:
            raise AccessDenied("No scopes were granted")

        self.consents.grant(session.subject_id, client.client_id, granted, remember)
        _audit("consent_granted", subject=session.subject_id, client_id=client.client_id,
               scopes=granted, remember=remember)
        return request.with_scopes(granted)

    def deny(self, request: AuthorizationRequest, session: Session = None) -> AuthorizationResult:
        """The user refused consent."""
        result = AuthorizationResult(request=request)
        try:
            result.client = self.validate(request)
        except OAuthError as e:
            return self._reject(result, e)
        result.advance(FlowState.CLIENT_VALIDATED)
        if session is not None:
            result.advance(FlowState.LOGIN_OK)
        result.advance(FlowState.CONSENT_REQUIRED)
        return self._reject(result, AccessDenied())

    def _complete(self, result: AuthorizationResult, client: Client, session: Session) -> AuthorizationResult:
        request = result.request
        if RESPONSE_TYPES[request.response_types] == AUTHORIZATION_CODE:
            code = self.codes.create(
                client_id=client.client_id,
                redirect_uri=request.redirect_uri,
                subject_id=session.subject_id,
                scopes=request.scopes,
                nonce=request.nonce,
                claims=dict(session.claims),
                auth_time=session.created_at,
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method or ("S256" if request.code_challenge else None),
            )
            result.code = code.code
            params = {"code": code.code}
        else:
            result.tokens = self.issuer.issue(
                session.subject_id,
                client,
                request.scopes,
                nonce=request.nonce,
                claims=session.claims,
                response_types=request.response_types,
                auth_time=session.created_at,
            )
            params = result.tokens.to_params()
        result.advance(FlowState.TOKEN_ISSUED)
        self.consents.discard_transient(session.subject_id, client.client_id)

        if request.state is not None:
            params["state"] = request.state
        result.redirect_url = build_redirect(request.redirect_uri, params, self.response_mode(request))
        _audit("authorize_issued", subject=session.subject_id, client_id=client.client_id,
               response_type=request.response_type, scopes=list(request.scopes))
        return result.advance(FlowState.REDIRECTED)

    def _reject(self, result: AuthorizationResult, error: OAuthError) -> AuthorizationResult:
        request = result.request
        result.error = error
        result.challenge_url = None
        _audit("authorize_rejected", client_id=request.client_id, error=error.error,
               state_reached=result.state.value)
        logger.info(f"[AUTHORIZE] Rejected {request.client_id or '-'}: {error.error} ({error.description})")

        if error.redirectable:
            # Only reachable after the client and redirect URI were verified
            client = result.client or self.clients.get(request.client_id)
            if client is not None and client.allows_redirect(request.redirect_uri):
                params = error.to_dict()
                if request.state is not None:
                    params["state"] = request.state
                mode = request.response_mode if request.response_mode in ("query", "fragment") else None
                if mode is None:
                    mode = "fragment" if RESPONSE_TYPES.get(request.response_types) == IMPLICIT else "query"
                result.redirect_url = build_redirect(request.redirect_uri, params, mode)
        return result.advance(FlowState.REJECTED)
