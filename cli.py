"""CLI entry point for oidc-provider.

Runs the provider and a command line relying party that signs in through the
browser against it.
"""
import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from config import CONFIG_DIR, SIGNING_KEY_FILE, VERSION, load_config

_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

DEFAULT_CLIENT_ID = "angular-spa-001"
DEFAULT_REDIRECT_URI = "http://localhost:4200/"


def _rp_client(args):
    from rp.client import RelyingPartyClient
    from rp.storage import FileTokenStorage

    return RelyingPartyClient(
        issuer=args.issuer or load_config().issuer_url,
        client_id=args.client_id,
        redirect_uri=args.redirect_uri,
        post_logout_redirect_uri=args.redirect_uri,
        storage=FileTokenStorage(),
    )


# ============== Commands ==============

def cmd_serve(args):
    """Run the provider in the foreground."""
    import main

    config = load_config()
    if args.host or args.port:
        data = dict(config.data)
        data["host"] = args.host or config.host
        data["port"] = args.port or config.port
        config = type(config)(data)
    print(f"Starting OIDC provider {config.issuer_url} on {config.host}:{config.port}")
    main.run(config)


def cmd_login(args):
    """Sign in through the browser and store the tokens."""
    from rp.callback import run_browser_login
    from rp.client import RelyingPartyError

    rp = _rp_client(args)
    try:
        tokens = run_browser_login(rp)
    except RelyingPartyError as e:
        print(f"[X] {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"[X] Could not listen on {args.redirect_uri}: {e}", file=sys.stderr)
        return 1
    if tokens is None:
        return 1

    print(f"\n[OK] Logged in as: {tokens.claims.get('preferred_username') or tokens.claims.get('sub')}")
    print(f"  Scope:  {tokens.scope}")
    print(f"  Tokens saved to: {rp.storage.path}")
    return 0


def cmd_status(args):
    """Show configuration and stored login."""
    config = load_config()
    rp = _rp_client(args)

    print("\n" + "=" * 50)
    print(f"  oidc-provider v{VERSION}")
    print("=" * 50)

    print("\n[Provider]")
    print(f"  Issuer:   {config.issuer_url}")
    print(f"  Listen:   {config.host}:{config.port}")
    print(f"  Users:    {config.user_backend}")
    print(f"  Clients:  {config.clients_file or 'built-in'}")
    print(f"  Key file: {config.signing_key_file} ({'exists' if config.signing_key_file.exists() else 'missing'})")

    print("\n[Login]")
    tokens = rp.storage.read()
    if tokens is None:
        print("  Status:   Not logged in")
        print("  Action:   Run 'oidc-provider login' to log in")
    else:
        state = "Expired" if tokens.is_expired() else "Logged in"
        print(f"  Status:   {state}")
        print(f"  Subject:  {tokens.claims.get('sub')}")
        print(f"  Scope:    {tokens.scope}")
        print(f"  File:     {rp.storage.path}")

    print("\n" + "=" * 50 + "\n")
    return 0


def cmd_logout(args):
    """Clear stored tokens and print the provider logout URL."""
    from rp.client import RelyingPartyError

    rp = _rp_client(args)
    if rp.storage.read() is None:
        print("Not logged in.")
        return 0

    try:
        rp.load_discovery_document()
        print(f"End the provider session at:\n  {rp.logout_url()}")
    except RelyingPartyError as e:
        print(f"  Could not reach provider: {e}", file=sys.stderr)
    rp.clear()
    print(f"\nLogged out. Tokens removed: {rp.storage.path}")
    return 0


def cmd_keygen(args):
    """Generate a new signing key file."""
    from oauth.tokens import SigningKey

    path = Path(args.output) if args.output else load_config().signing_key_file
    if path.exists() and not args.force:
        print(f"[X] {path} exists. Use --force to replace it.", file=sys.stderr)
        return 1

    key = SigningKey.generate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key.private_pem())
    os.chmod(path, 0o600)
    print(f"[OK] Signing key {key.kid} written to {path}")
    return 0


def cmd_version(args=None):
    print(f"oidc-provider v{VERSION}")
    return 0


def cmd_help(args=None):
    print(f"""
oidc-provider - Minimal OpenID Connect provider

USAGE:
    oidc-provider <command> [options]

COMMANDS:
    serve       Run the provider (foreground)
    login       Log in through the browser as the SPA client
    status      Show configuration and stored login
    logout      Clear stored tokens
    keygen      Generate a signing key
    version     Show version information
    help        Show this help message

EXAMPLES:
    # Run on the default issuer (http://localhost:5000)
    oidc-provider serve

    # Log in as the test user (mary / Secret123!)
    oidc-provider login

FILES:
    {SIGNING_KEY_FILE}
        Signing key
    {CONFIG_DIR}/rp_tokens.json
        Stored login
""")
    return 0


# ============== Main Entry Point ==============

COMMANDS = {
    "serve": cmd_serve,
    "login": cmd_login,
    "status": cmd_status,
    "logout": cmd_logout,
    "keygen": cmd_keygen,
    "version": cmd_version,
    "help": cmd_help,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oidc-provider",
        description="Minimal OpenID Connect provider",
    )
    parser.add_argument("command", nargs="?", default="help", choices=list(COMMANDS), help="Command to run")
    parser.add_argument("--host", help="Listen address (serve)")
    parser.add_argument("--port", type=int, help="Listen port (serve)")
    parser.add_argument("--issuer", help="Provider URL (login, status, logout)")
    parser.add_argument("--client-id", default=DEFAULT_CLIENT_ID, help="Client to log in as")
    parser.add_argument("--redirect-uri", default=DEFAULT_REDIRECT_URI, help="Registered redirect URI")
    parser.add_argument("--output", "-o", help="Key file path (keygen)")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing key (keygen)")
    parser.add_argument("--version", "-v", action="store_true", help=argparse.SUPPRESS)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.version:
        return cmd_version(args)
    return COMMANDS[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
