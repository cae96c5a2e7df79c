"""Error taxonomy for the authorization server.

Every failure the flow can produce is an OAuthError subclass carrying its
RFC 6749 error code. The HTTP layer decides how to surface it:

- redirectable errors go back to the client's (already verified) redirect URI
- UnknownClient and InvalidRedirectUri are always rendered as an error page,
  the claimed redirect URI is never trusted for them
- SigningFailure is fatal for the request (500)
"""


class OAuthError(Exception):
    """Base class for flow errors."""

    error = "server_error"
    description = "The request could not be processed"
    status_code = 400
    redirectable = True

    def __init__(self, description: str = None):
        super().__init__(description or self.description)
        if description:
            self.description = description

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class UnknownClient(OAuthError):
    error = "invalid_client"
    description = "Unknown client"
    redirectable = False


class InvalidRedirectUri(OAuthError):
    error = "invalid_request"
    description = "The redirect_uri is not registered for this client"
    redirectable = False


class UnauthorizedGrantType(OAuthError):
    error = "unauthorized_client"
    description = "The client is not allowed to use this response type"


class InvalidRequest(OAuthError):
    error = "invalid_request"
    description = "The request is missing a parameter or is malformed"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"
    description = "The response type is not supported"


class InvalidScope(OAuthError):
    error = "invalid_scope"
    description = "The requested scope is invalid or not allowed for this client"


class InvalidCredentials(OAuthError):
    error = "access_denied"
    # Same message for unknown user and wrong password
    description = "Invalid username or password"
    status_code = 401
    redirectable = False


class AccessDenied(OAuthError):
    error = "access_denied"
    description = "The user denied the request"


class LoginRequired(OAuthError):
    error = "login_required"
    description = "The user is not logged in"


class ExpiredSession(LoginRequired):
    description = "Your session has expired, please sign in again"


class ConsentRequired(OAuthError):
    error = "consent_required"
    description = "The user has not granted consent for this client"


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    description = "The authorization grant is invalid, expired or already used"
    redirectable = False


class InvalidClientCredentials(OAuthError):
    error = "invalid_client"
    description = "Client authentication failed"
    status_code = 401
    redirectable = False


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    description = "The grant type is not supported"
    redirectable = False


class SigningFailure(OAuthError):
    error = "server_error"
    description = "Token signing failed"
    status_code = 500
    redirectable = False
