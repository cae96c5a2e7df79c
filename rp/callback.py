"""Browser login for the command line relying party.

Implicit-flow tokens come back in the URI fragment, which browsers never send
to a server. The loopback handler answers the redirect with a small page that
posts ``location.hash`` back to ``/callback``, where the login is completed.
"""
import html
import logging
import os
import socket
import subprocess
import sys
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

from rp.client import RelyingPartyClient, RelyingPartyError, StateMismatch

logger = logging.getLogger(__name__)

LOGIN_TIMEOUT = 300  # seconds

RELAY_PAGE = """<!DOCTYPE html>
<html>
<head><title>Signing in</title></head>
<body>
<p id="status">Completing sign-in...</p>
<script>
fetch("/callback", {
  method: "POST",
  headers: {"Content-Type": "application/x-www-form-urlencoded"},
  body: location.hash.substring(1) || location.search.substring(1)
}).then(function (r) { return r.text(); })
  .then(function (t) { document.open(); document.write(t); document.close(); });
</script>
</body>
</html>"""

RESULT_PAGE = """<!DOCTYPE html>
<html>
<head><title>Sign-in result</title>
<style>
body {{ font-family: system-ui, sans-serif; background: #F4F6F8; color: #1F2933; margin: 0;
       min-height: 100vh; display: grid; place-items: center; }}
main {{ background: #FFFFFF; border: 1px solid #D9E2EC; border-radius: 12px; padding: 32px 36px; }}
</style>
</head>
<body><main><h2>{message}</h2></main></body>
</html>"""



def is_wsl() -> bool:
    if os.environ.get("WSL_DISTRO_NAME"):
        return True
    try:
        with open("/proc/version") as f:
            version = f.read().lower()
    except OSError:
        return False
    return "microsoft" in version or "wsl" in version


def open_browser(url: str) -> None:
    """Open URL in the user's browser, going through Windows under WSL."""
    if is_wsl():
        for command in (["wslview", url], ["cmd.exe", "/c", "start", url.replace("&", "^&")]):
            try:
                result = subprocess.run(command, capture_output=True, timeout=5)
                if result.returncode == 0:
                    return
            except (FileNotFoundError, subprocess.TimeoutExpired):
                continue
    webbrowser.open(url)


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class CallbackHandler(BaseHTTPRequestHandler):
    """Serves the relay page on the redirect path and receives POST /callback."""

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        if urlparse(self.path).path == self.server.redirect_path:
            self._send_html(RELAY_PAGE)
        else:
            self.send_error(404)

    def do_POST(self):
        if urlparse(self.path).path != "/callback":
            self.send_error(404)
            return

        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length).decode("utf-8")
        try:
            self.server.login_result = self.server.rp_client.try_login("#" + body)
            self._send_html(RESULT_PAGE.format(message="Login successful! You can close this window."))
        except StateMismatch:
            # not the response to our request; keep waiting for it
            self.send_error(400, "Unexpected callback")
            return
        except RelyingPartyError as e:
            self.server.login_error = str(e)
            self._send_html(RESULT_PAGE.format(message=f"Login failed: {html.escape(str(e))}"))
        self.server.should_stop = True

    def _send_html(self, page: str):
        body = page.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def make_callback_server(rp_client: RelyingPartyClient) -> HTTPServer:
    """Bind the loopback server on the port of the client's redirect URI."""
    redirect = urlparse(rp_client.redirect_uri)
    port = redirect.port or 80
    server = HTTPServer(("127.0.0.1", port), CallbackHandler)
    server.rp_client = rp_client
    server.redirect_path = redirect.path or "/"
    server.login_result = None
    server.login_error = None
    server.should_stop = False
    server.timeout = 1
    return server


def run_browser_login(rp_client: RelyingPartyClient, timeout: int = LOGIN_TIMEOUT):
    """Run the browser login and return the stored TokenSet, or None."""
    rp_client.load_discovery_document()
    server = make_callback_server(rp_client)
    login_url = rp_client.create_login_url()

    print(f"Signing in to {rp_client.issuer} as {rp_client.client_id}...")
    print(f"Open this URL if no browser window appears:\n  {login_url}\n")
    open_browser(login_url)

    print(f"Listening on {rp_client.redirect_uri}", end="", flush=True)
    deadline = time.monotonic() + timeout
    try:
        while not server.should_stop and time.monotonic() < deadline:
            server.handle_request()
    finally:
        server.server_close()
    print()

    if server.login_error:
        logger.warning(f"[RP] Browser login failed: {server.login_error}")
        print(f"\n[X] Login failed: {server.login_error}", file=sys.stderr)
        return None
    if server.login_result is None:
        print("\n[X] Login timed out. Please try again.", file=sys.stderr)
        return None
    return server.login_result
