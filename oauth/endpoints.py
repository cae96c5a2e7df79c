"""OpenID Connect endpoints.

This module contains the HTTP surface of the provider:
- Discovery metadata and JWKS (/.well-known/*)
- Authorization flow (/connect/authorize, /account/login, /consent)
- Token endpoint (/connect/token)
- UserInfo and a sample protected API (/connect/userinfo, /api/identity)
- Logout (/connect/endsession)

All flow decisions are made by ``oauth.authorize``; the handlers here only
translate results into redirects, pages and JSON.
"""

import base64
import html
import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, FastAPI, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from config import VERSION
from oauth.authorize import (
    AuthorizationRequest,
    AuthorizationResult,
    login_url,
)
from oauth.clients import Client
from oauth.errors import (
    AccessDenied,
    ExpiredSession,
    InvalidCredentials,
    OAuthError,
)
from oauth.middleware import BearerTokenMiddleware
from oauth.provider import Provider
from oauth.sessions import SESSION_COOKIE, Session
from oauth.templates import (
    CONSENT_PAGE,
    CONSENT_SCOPE,
    ERROR_PAGE,
    LOGGED_OUT_PAGE,
    LOGIN_PAGE,
)
from oauth.tokens import ID_TOKEN_TYPE

logger = logging.getLogger(__name__)

# Router for OIDC endpoints
router = APIRouter(tags=["oidc"])

ISSUER_NAME = "OIDC Provider"

# Set by init_oauth_routes()
_provider: Optional[Provider] = None


def init_oauth_routes(provider: Provider):
    """Initialize the routes with the provider components.

    Must be called before including the router in the app.
    """
    global _provider
    _provider = provider


# ============== Helpers ==============

def _esc(value) -> str:
    return html.escape(str(value if value is not None else ""), quote=True)


def error_page(error: OAuthError, title: str = "Sign-in error") -> HTMLResponse:
    return HTMLResponse(
        ERROR_PAGE.format(
            issuer_name=_esc(ISSUER_NAME),
            title=_esc(title),
            message=_esc(error.description),
            error=_esc(error.error),
        ),
        status_code=error.status_code,
    )


def login_page(auth_request: AuthorizationRequest, client: Client, error: str = "",
               username: str = "", status_code: int = 200) -> HTMLResponse:
    error_html = f'<div class="error">{_esc(error)}</div>' if error else ""
    return HTMLResponse(
        LOGIN_PAGE.format(
            issuer_name=_esc(ISSUER_NAME),
            client_name=_esc(client.display_name),
            error=error_html,
            return_url=_esc(auth_request.return_url),
            username=_esc(username),
        ),
        status_code=status_code,
    )


def consent_page(auth_request: AuthorizationRequest, client: Client, session: Session) -> HTMLResponse:
    scopes_html = "".join(
        CONSENT_SCOPE.format(
            name=_esc(scope.name),
            display_name=_esc(scope.display_name),
            disabled=" disabled" if scope.required else "",
        )
        for scope in _provider.authorization.describe_scopes(auth_request)
    )
    return HTMLResponse(CONSENT_PAGE.format(
        issuer_name=_esc(ISSUER_NAME),
        username=_esc(session.username),
        client_name=_esc(client.display_name),
        client_initial=_esc(client.display_name[:1].upper()),
        return_url=_esc(auth_request.return_url),
        scopes=scopes_html,
    ))


def _result_response(result: AuthorizationResult) -> HTMLResponse | RedirectResponse:
    if result.redirect_url:
        return RedirectResponse(url=result.redirect_url, status_code=302)
    if result.challenge_url:
        response = RedirectResponse(url=result.challenge_url, status_code=302)
        if isinstance(result.error, ExpiredSession):
            response.delete_cookie(SESSION_COOKIE)
        return response
    return error_page(result.error)


def _current_session(request: Request) -> Optional[Session]:
    try:
        return _provider.sessions.current_session(request.cookies.get(SESSION_COOKIE))
    except ExpiredSession:
        return None


def _parse_return_url(return_url: str):
    """Rebuild the authorization request behind a return_url and re-validate it."""
    auth_request = AuthorizationRequest.from_return_url(return_url)
    client = _provider.authorization.validate(auth_request)
    return auth_request, client


def _set_session_cookie(response, session: Session):
    response.set_cookie(
        SESSION_COOKIE,
        session.session_id,
        max_age=session.max_age if session.persistent else None,
        httponly=True,
        samesite="lax",
        secure=_provider.cookie_secure,
    )


def _basic_credentials(request: Request):
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("basic "):
        return None, None
    try:
        raw = base64.b64decode(auth.split(" ", 1)[1].strip()).decode("utf-8")
    except ValueError:
        return None, None
    if ":" not in raw:
        return None, None
    client_id, secret = raw.split(":", 1)
    return client_id, secret


# ============== Discovery ==============

@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    """OpenID Provider Metadata (OIDC Discovery 1.0)."""
    issuer = _provider.issuer_url
    return {
        "issuer": issuer,
        "jwks_uri": f"{issuer}/.well-known/openid-configuration/jwks",
        "authorization_endpoint": f"{issuer}/connect/authorize",
        "token_endpoint": f"{issuer}/connect/token",
        "userinfo_endpoint": f"{issuer}/connect/userinfo",
        "end_session_endpoint": f"{issuer}/connect/endsession",
        "scopes_supported": _provider.scopes.names(),
        "claims_supported": _provider.scopes.claims_for(_provider.scopes.names()),
        "response_types_supported": ["code", "token", "id_token", "id_token token"],
        "response_modes_supported": ["query", "fragment"],
        "grant_types_supported": ["authorization_code", "client_credentials", "implicit"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "code_challenge_methods_supported": ["S256", "plain"],
    }


@router.get("/.well-known/openid-configuration/jwks")
async def jwks():
    return _provider.issuer.key_set.jwks()


# ============== Authorization Flow ==============

@router.get("/connect/authorize")
async def authorize(request: Request):
    """Authorization endpoint: redirects to login, consent or back to the client."""
    auth_request = AuthorizationRequest.from_query(request.query_params)
    result = _provider.authorization.authorize(auth_request, request.cookies.get(SESSION_COOKIE))
    logger.info(f"[AUTHORIZE] {auth_request.client_id or '-'} -> {result.state.value}")
    return _result_response(result)


@router.get("/account/login")
async def login_form(return_url: str = "", reason: str = ""):
    """Show login form."""
    try:
        auth_request, client = _parse_return_url(return_url)
    except OAuthError as e:
        return error_page(e)

    error = ExpiredSession.description if reason == "expired" else ""
    return login_page(auth_request, client, error=error)


@router.post("/account/login")
async def login_submit(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    remember_me: bool = Form(False),
    return_url: str = Form(""),
    action: str = Form("login"),
):
    """Handle login form submission."""
    try:
        auth_request, client = _parse_return_url(return_url)
    except OAuthError as e:
        return error_page(e)

    if action == "cancel":
        return _result_response(_provider.authorization.deny(auth_request))

    try:
        user = _provider.sessions.authenticate(username, password)
    except InvalidCredentials as e:
        return login_page(auth_request, client, error=e.description, username=username, status_code=e.status_code)

    # Fresh session id on every login
    _provider.sessions.end(request.cookies.get(SESSION_COOKIE))
    session = _provider.sessions.establish(user, persistent=remember_me)

    response = RedirectResponse(url=auth_request.without_prompt().return_url, status_code=302)
    _set_session_cookie(response, session)
    return response


# ============== Consent ==============

@router.get("/consent")
async def consent_form(request: Request, return_url: str = ""):
    """Show consent page."""
    try:
        auth_request, client = _parse_return_url(return_url)
    except OAuthError as e:
        return error_page(e)

    session = _current_session(request)
    if session is None:
        return RedirectResponse(url=login_url(auth_request), status_code=302)
    return consent_page(auth_request, client, session)


@router.post("/consent")
async def consent_submit(
    request: Request,
    return_url: str = Form(""),
    action: str = Form("deny"),
    remember_consent: bool = Form(False),
    scopes: List[str] = Form([]),
):
    """Handle consent form submission."""
    try:
        auth_request, client = _parse_return_url(return_url)
    except OAuthError as e:
        return error_page(e)

    session = _current_session(request)
    if session is None:
        return RedirectResponse(url=login_url(auth_request), status_code=302)

    if action != "allow":
        logger.info(f"[CONSENT] {session.subject_id} denied {client.client_id}")
        return _result_response(_provider.authorization.deny(auth_request, session))

    try:
        resumed = _provider.authorization.grant_consent(auth_request, session, scopes, remember_consent)
    except AccessDenied:
        return _result_response(_provider.authorization.deny(auth_request, session))
    except OAuthError as e:
        return error_page(e)

    # Back through the authorization endpoint, which now finds the consent
    return RedirectResponse(url=resumed.return_url, status_code=302)


# ============== Token Endpoint ==============

@router.post("/connect/token")
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    client_secret: str = Form(None),
    code_verifier: str = Form(None),
    scope: str = Form(None),
):
    """OAuth 2.0 Token Endpoint."""
    basic_id, basic_secret = _basic_credentials(request)
    if basic_id:
        client_id, client_secret = basic_id, basic_secret

    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")
    no_store = {"Cache-Control": "no-store", "Pragma": "no-cache"}

    try:
        issued = _provider.tokens.handle(
            grant_type,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            code_verifier=code_verifier,
            scope=scope,
        )
    except OAuthError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code, headers=no_store)

    body = {
        "access_token": issued.access_token,
        "token_type": issued.token_type,
        "expires_in": issued.expires_in,
        "scope": issued.scope,
    }
    if issued.id_token:
        body["id_token"] = issued.id_token
    return JSONResponse(body, headers=no_store)


# ============== Protected Resources ==============

@router.get("/connect/userinfo")
async def userinfo(request: Request):
    """Claims about the user behind the access token."""
    claims = request.state.token_claims
    released = _provider.issuer.released_claims(claims.get("scope") or [], claims)
    return {"sub": claims["sub"], **released}


@router.get("/api/identity")
async def api_identity(request: Request):
    """Sample API resource: echoes the caller's token claims."""
    claims = request.state.token_claims
    return {"claims": [{"type": k, "value": v} for k, v in claims.items()]}


# ============== Logout ==============

@router.get("/connect/endsession")
async def end_session(
    request: Request,
    id_token_hint: str = "",
    post_logout_redirect_uri: str = "",
    client_id: str = "",
    state: str = "",
):
    """RP-initiated logout."""
    ended = _provider.sessions.end(request.cookies.get(SESSION_COOKIE))
    if ended:
        logger.info(f"[LOGIN] Session ended for {ended.subject_id}")

    if id_token_hint:
        hint = _provider.issuer.verify(id_token_hint, token_type=ID_TOKEN_TYPE, allow_expired=True)
        client_id = hint["aud"] if hint else ""

    client = _provider.clients.get(client_id) if client_id else None
    if client and post_logout_redirect_uri in client.post_logout_redirect_uris:
        target = post_logout_redirect_uri
        if state:
            target += ("&" if "?" in target else "?") + urlencode({"state": state})
        response = RedirectResponse(url=target, status_code=302)
    else:
        response = HTMLResponse(LOGGED_OUT_PAGE.format(issuer_name=_esc(ISSUER_NAME)))
    response.delete_cookie(SESSION_COOKIE)
    return response


# ============== Server Info ==============

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "oidc-provider"}


@router.get("/")
async def root():
    """Root endpoint with server info."""
    issuer = _provider.issuer_url
    return {
        "name": ISSUER_NAME,
        "version": VERSION,
        "issuer": issuer,
        "discovery": f"{issuer}/.well-known/openid-configuration",
        "clients": sorted(c.client_id for c in _provider.clients),
    }


# ============== App Factory ==============

def create_app(provider: Provider) -> FastAPI:
    init_oauth_routes(provider)

    app = FastAPI(
        title=ISSUER_NAME,
        description="Minimal OpenID Connect provider",
        version=VERSION,
    )

    app.add_middleware(
        BearerTokenMiddleware,
        token_issuer=provider.issuer,
        protected_prefixes=("/connect/userinfo", "/api/"),
        required_scopes={"/connect/userinfo": "openid", "/api/": "fake-api-1"},
    )

    # Outermost, so preflight requests are answered before the bearer check
    app.add_middleware(
        CORSMiddleware,
        allow_origins=provider.clients.cors_origins(),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app
