"""Tests for oauth/clients.py."""
import json

import pytest

from oauth.clients import (
    CLIENT_CREDENTIALS,
    IMPLICIT,
    Client,
    ClientRegistry,
    ScopeCatalog,
    default_registry,
    hash_secret,
)


class TestDefaultClients:
    def test_both_clients_registered(self):
        registry = default_registry()
        assert "foo-client-001" in registry
        assert "angular-spa-001" in registry
        assert len(registry) == 2

    def test_spa_client(self):
        client = default_registry().get("angular-spa-001")
        assert client.grant_types == frozenset({IMPLICIT})
        assert client.allowed_scopes == frozenset({"openid", "profile", "email"})
        assert client.allow_access_tokens_via_browser
        assert not client.is_confidential

    def test_api_client_secret_is_hashed(self):
        client = default_registry().get("foo-client-001")
        assert client.grant_types == frozenset({CLIENT_CREDENTIALS})
        assert client.secret_hash != "apisleutel"
        assert client.verify_secret("apisleutel")
        assert not client.verify_secret("wrong")
        assert not client.verify_secret(None)

    def test_public_client_has_no_secret(self):
        client = default_registry().get("angular-spa-001")
        assert not client.verify_secret("")
        assert not client.verify_secret("anything")

    def test_cors_origins(self):
        assert default_registry().cors_origins() == ["http://localhost:4200"]


class TestRedirectMatching:
    def test_exact_match_only(self):
        client = default_registry().get("angular-spa-001")
        assert client.allows_redirect("http://localhost:4200/")
        assert client.allows_redirect("http://localhost:4200/silent-refresh.html")
        assert not client.allows_redirect("http://localhost:4200")
        assert not client.allows_redirect("http://LOCALHOST:4200/")
        assert not client.allows_redirect("http://localhost:4200/?next=evil")
        assert not client.allows_redirect("https://evil.example/")


class TestClientLoading:
    def test_unknown_grant_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown grant types"):
            Client.from_dict({"client_id": "x", "grant_types": ["password"]})

    def test_plain_secret_is_hashed_on_load(self):
        client = Client.from_dict({
            "client_id": "svc",
            "grant_types": ["client_credentials"],
            "secret": "s3cret",
        })
        assert client.secret_hash == hash_secret("s3cret")
        assert client.verify_secret("s3cret")

    def test_duplicate_client_id_rejected(self):
        entry = {"client_id": "dup", "grant_types": ["implicit"]}
        with pytest.raises(ValueError, match="Duplicate"):
            ClientRegistry.from_dicts([entry, entry])

    def test_from_file(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([{
            "client_id": "file-client",
            "client_name": "From File",
            "grant_types": ["implicit"],
            "allowed_scopes": ["openid"],
            "redirect_uris": ["https://app.example/cb"],
            "allowed_cors_origins": ["https://app.example"],
        }]))

        registry = ClientRegistry.from_file(path)

        client = registry.get("file-client")
        assert client.display_name == "From File"
        assert client.allows_redirect("https://app.example/cb")
        assert registry.cors_origins() == ["https://app.example"]

    def test_clients_are_immutable(self):
        client = default_registry().get("angular-spa-001")
        with pytest.raises(AttributeError):
            client.redirect_uris = frozenset({"https://evil.example/"})


class TestScopeCatalog:
    def test_claims_for_identity_scopes(self):
        catalog = ScopeCatalog()
        claims = catalog.claims_for(["openid", "email"])
        assert claims == ["sub", "email", "email_verified"]

    def test_api_scopes_release_no_claims(self):
        catalog = ScopeCatalog()
        assert catalog.claims_for(["fake-api-1"]) == []
        assert catalog.api_scopes(["openid", "fake-api-1"]) == ["fake-api-1"]

    def test_openid_is_required(self):
        assert ScopeCatalog().get("openid").required
        assert not ScopeCatalog().get("profile").required
