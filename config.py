"""Config management for the OIDC provider.

Settings come from environment variables (optionally via a .env file loaded
by the entry points) and are read once at startup. The Config object only
exposes read-only properties.
"""
import os
from pathlib import Path
from typing import Optional

VERSION = "1.0.0"

CONFIG_DIR = Path.home() / ".oidc-provider"
SIGNING_KEY_FILE = CONFIG_DIR / "signing_key.pem"
DEFAULT_ISSUER = "http://localhost:5000"


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = dict(data or {})

    @property
    def issuer_url(self) -> str:
        return (self.data.get("issuer_url") or DEFAULT_ISSUER).rstrip("/")

    @property
    def host(self) -> str:
        return self.data.get("host") or "127.0.0.1"

    @property
    def port(self) -> int:
        return int(self.data.get("port") or 5000)

    @property
    def clients_file(self) -> Optional[str]:
        return self.data.get("clients_file")

    @property
    def session_lifetime(self) -> int:
        return int(self.data.get("session_lifetime") or 8 * 60 * 60)

    @property
    def max_token_lifetime(self) -> int:
        return int(self.data.get("max_token_lifetime") or 60 * 60)

    @property
    def signing_key_file(self) -> Path:
        return Path(self.data.get("signing_key_file") or SIGNING_KEY_FILE)

    @property
    def retiring_key_files(self) -> list[str]:
        value = self.data.get("retiring_key_files") or ""
        return [p for p in value.split(os.pathsep) if p]

    @property
    def cookie_secure(self) -> bool:
        return str(self.data.get("cookie_secure", "false")).lower() == "true"

    @property
    def user_backend(self) -> str:
        return (self.data.get("user_backend") or "memory").lower()

    @property
    def supabase_url(self) -> str:
        return self.data.get("supabase_url") or ""

    @property
    def supabase_anon_key(self) -> str:
        return self.data.get("supabase_anon_key") or ""

    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)


def load_config(environ: dict = None) -> Config:
    """Load config from environment variables."""
    env = os.environ if environ is None else environ
    return Config({
        "issuer_url": env.get("ISSUER_URL"),
        "host": env.get("OIDC_HOST"),
        "port": env.get("OIDC_PORT"),
        "clients_file": env.get("CLIENTS_FILE"),
        "session_lifetime": env.get("SESSION_LIFETIME_SECONDS"),
        "max_token_lifetime": env.get("MAX_TOKEN_LIFETIME_SECONDS"),
        "signing_key_file": env.get("SIGNING_KEY_FILE"),
        "retiring_key_files": env.get("RETIRING_KEY_FILES"),
        "cookie_secure": env.get("COOKIE_SECURE", "false"),
        "user_backend": env.get("USER_BACKEND"),
        "supabase_url": env.get("SUPABASE_URL"),
        "supabase_anon_key": env.get("SUPABASE_ANON_KEY"),
    })
