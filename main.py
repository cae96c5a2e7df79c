"""OIDC provider server.

Builds the provider from environment config and exposes it as ``app`` for
uvicorn (``uvicorn main:app``). The CLI ``serve`` command runs the same app.

Handles:
- Discovery and JWKS (/.well-known/openid-configuration)
- Browser sign-in: authorize, login, consent, end session
- Token endpoint for code and client credentials grants
- Protected userinfo and sample API (/connect/userinfo, /api/identity)
"""
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

from config import Config, load_config
from logging_config import setup_logging
from oauth.clients import ClientRegistry, default_registry
from oauth.endpoints import create_app
from oauth.provider import build_provider
from oauth.tokens import load_key_set
from oauth.users import InMemoryUserStore, SupabaseUserStore, UserStore

# Local .env; variables already in the environment win
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

logger = logging.getLogger(__name__)


def create_supabase_client(config: Config) -> Optional[Client]:
    if not config.has_supabase():
        return None
    return create_client(config.supabase_url, config.supabase_anon_key)


def load_clients(config: Config) -> ClientRegistry:
    if config.clients_file:
        return ClientRegistry.from_file(config.clients_file)
    return default_registry()


def load_users(config: Config, supabase: Optional[Client] = None) -> UserStore:
    if config.user_backend == "supabase":
        if supabase is None:
            raise RuntimeError("USER_BACKEND=supabase needs SUPABASE_URL and SUPABASE_ANON_KEY")
        logger.info("[STARTUP] Authenticating users against Supabase")
        return SupabaseUserStore(supabase)
    logger.info("[STARTUP] Using the in-memory test users")
    return InMemoryUserStore()


def build_app(config: Config = None):
    """Create the FastAPI app for the given (or environment) config."""
    config = config or load_config()
    supabase = create_supabase_client(config)
    setup_logging(issuer=config.issuer_url, supabase_client=supabase)

    logger.info(f"[STARTUP] Issuer: {config.issuer_url}")
    provider = build_provider(
        issuer_url=config.issuer_url,
        clients=load_clients(config),
        users=load_users(config, supabase),
        key_set=load_key_set(config.signing_key_file, config.retiring_key_files),
        session_lifetime=config.session_lifetime,
        max_token_lifetime=config.max_token_lifetime,
        cookie_secure=config.cookie_secure,
    )
    return create_app(provider)


def run(config: Config = None):
    import uvicorn

    config = config or load_config()
    application = build_app(config)
    logger.info(f"[STARTUP] Listening on {config.host}:{config.port}")
    uvicorn.run(application, host=config.host, port=config.port)


def __getattr__(name):
    # uvicorn main:app builds the app on first access, not at import
    if name == "app":
        global app
        app = build_app()
        return app
    raise AttributeError(name)


if __name__ == "__main__":
    run()
