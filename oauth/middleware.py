"""Bearer token middleware for protected resources.

Validates access tokens issued by this provider (stateless JWT check) for
requests under the protected path prefixes and exposes the token claims as
``request.state.token_claims``.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.tokens import TokenIssuer

logger = logging.getLogger(__name__)


def unauthorized_response(error_description: str, error: str = "invalid_token") -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": error_description},
        status_code=401,
        headers={"WWW-Authenticate": f'Bearer error="{error}"'},
    )


def forbidden_response(error_description: str) -> JSONResponse:
    return JSONResponse(
        {"error": "insufficient_scope", "error_description": error_description},
        status_code=403,
        headers={"WWW-Authenticate": 'Bearer error="insufficient_scope"'},
    )


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Require a valid Bearer access token on protected paths.

    ``required_scopes`` maps a path prefix to the scope a token must carry.
    """

    def __init__(self, app, token_issuer: TokenIssuer, protected_prefixes=(), required_scopes: dict = None):
        super().__init__(app)
        self.token_issuer = token_issuer
        self.protected_prefixes = tuple(protected_prefixes)
        self.required_scopes = required_scopes or {}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.protected_prefixes):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            logger.info("[AUTH] Request rejected: no Bearer token")
            return unauthorized_response("Missing or invalid Authorization header", error="invalid_request")

        token_data = self.token_issuer.verify_access_token(auth_header[7:])
        if not token_data:
            logger.info("[AUTH] Request rejected: invalid or expired token")
            return unauthorized_response("Invalid or expired token")

        granted = set(token_data.get("scope") or [])
        for prefix, scope in self.required_scopes.items():
            if path.startswith(prefix) and scope not in granted:
                logger.warning(f"[AUTH] Access denied: token for {token_data.get('client_id')} lacks {scope}")
                return forbidden_response(f"The {scope} scope is required")

        request.state.token_claims = token_data
        return await call_next(request)
