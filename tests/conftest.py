"""Shared fixtures: an in-memory provider and a scripted browser."""
from urllib.parse import parse_qsl, urlencode, urlsplit

import pytest
from fastapi.testclient import TestClient

from oauth.authorize import CONSENT_PATH, LOGIN_PATH
from oauth.clients import DEFAULT_CLIENTS, ClientRegistry
from oauth.endpoints import create_app
from oauth.provider import build_provider
from oauth.tokens import KeySet, SigningKey
from oauth.users import InMemoryUserStore

ISSUER = "http://testserver"
SPA_CLIENT = "angular-spa-001"
SPA_REDIRECT = "http://localhost:4200/"
CODE_REDIRECT = "http://localhost:8080/callback"
NONCE = "n-0S6_WzA2Mj"

CODE_CLIENTS = [
    {
        "client_id": "native-app",
        "grant_types": ["authorization_code"],
        "allowed_scopes": ["openid", "profile", "email"],
        "redirect_uris": [CODE_REDIRECT],
    },
    {
        "client_id": "web-app",
        "client_name": "Web App",
        "grant_types": ["authorization_code"],
        "secret": "web-secret",
        "allowed_scopes": ["openid", "profile", "email", "fake-api-1"],
        "redirect_uris": [CODE_REDIRECT],
        "require_consent": False,
    },
]


def query_params(url: str) -> dict:
    return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))


def fragment_params(url: str) -> dict:
    return dict(parse_qsl(urlsplit(url).fragment, keep_blank_values=True))


class Browser:
    """Drives the login and consent pages the way a user agent would."""

    def __init__(self, http: TestClient):
        self.http = http

    def get(self, url: str):
        return self.http.get(url, follow_redirects=False)

    def authorize(self, **overrides):
        params = {
            "client_id": SPA_CLIENT,
            "response_type": "id_token token",
            "redirect_uri": SPA_REDIRECT,
            "scope": "openid profile email",
            "state": "abc123",
            "nonce": NONCE,
        }
        params.update(overrides)
        params = {k: v for k, v in params.items() if v is not None}
        return self.get(f"/connect/authorize?{urlencode(params)}")

    def login(self, location: str, username="mary", password="Secret123!", remember_me=False):
        data = {
            "username": username,
            "password": password,
            "return_url": query_params(location)["return_url"],
        }
        if remember_me:
            data["remember_me"] = "true"
        return self.http.post(LOGIN_PATH, data=data, follow_redirects=False)

    def consent(self, location: str, scopes=None, remember=True, action="allow"):
        return_url = query_params(location)["return_url"]
        if scopes is None:
            scopes = query_params(return_url)["scope"].split()
        data = {"return_url": return_url, "action": action, "scopes": list(scopes)}
        if remember:
            data["remember_consent"] = "true"
        return self.http.post(CONSENT_PATH, data=data, follow_redirects=False)

    def run(self, response, scopes=None, remember_consent=True, action="allow"):
        """Follow local redirects, answering challenges, until the client is reached."""
        for _ in range(8):
            assert response.status_code == 302, response.text
            location = response.headers["location"]
            if location.startswith(LOGIN_PATH):
                response = self.login(location)
            elif location.startswith(CONSENT_PATH):
                response = self.consent(location, scopes, remember_consent, action)
            elif location.startswith("/") or location.startswith(ISSUER):
                response = self.get(location)
            else:
                return location
        raise AssertionError("Too many redirects")

    def sign_in(self, scopes=None, remember_consent=True, **params) -> str:
        return self.run(self.authorize(**params), scopes, remember_consent)


@pytest.fixture(scope="session")
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def key_set(signing_key):
    return KeySet(active=signing_key)


@pytest.fixture
def clients():
    return ClientRegistry.from_dicts(DEFAULT_CLIENTS + CODE_CLIENTS)


@pytest.fixture
def users():
    return InMemoryUserStore()


@pytest.fixture
def provider(clients, users, key_set):
    return build_provider(ISSUER, clients, users, key_set)


@pytest.fixture
def app(provider):
    return create_app(provider)


@pytest.fixture
def http(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def browser(http):
    return Browser(http)


@pytest.fixture
def mary(provider):
    return provider.sessions.authenticate("mary", "Secret123!")
