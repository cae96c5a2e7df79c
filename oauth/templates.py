"""HTML templates for the login, consent and error pages.

Templates are plain format strings. Callers must HTML-escape every value
they substitute (see ``oauth.endpoints``).

All pages share _BASE_STYLE; page-specific rules follow it.
"""

_BASE_STYLE = """
        body {{ font-family: system-ui, sans-serif; background: #F4F6F8; color: #1F2933; margin: 0;
               min-height: 100vh; display: grid; place-items: center; }}
        .container {{ background: #FFFFFF; width: 100%; max-width: 400px; padding: 32px 36px;
                     border: 1px solid #D9E2EC; border-radius: 12px; }}
        h1 {{ font-size: 22px; margin: 0 0 6px; }}
        p, .muted {{ color: #52606D; font-size: 14px; }}
        .error {{ color: #A61B1B; background: #FDECEC; border-left: 4px solid #A61B1B; padding: 10px 12px; margin: 16px 0; }}
        .info {{ color: #52606D; background: #F0F4F8; padding: 10px 12px; margin: 16px 0; font-size: 13px; }}
        button {{ width: 100%; padding: 12px; border: 0; border-radius: 6px; background: #2F6FEB;
                 color: #FFFFFF; font-size: 15px; cursor: pointer; }}
        button:hover {{ background: #2558C4; }}
        button.secondary {{ background: #FFFFFF; color: #52606D; border: 1px solid #BCCCDC; }}
        button.secondary:hover {{ background: #F0F4F8; }}
        .actions {{ display: flex; flex-direction: row-reverse; gap: 10px; }}
        .check {{ display: flex; gap: 8px; align-items: center; font-size: 14px; color: #52606D; margin-bottom: 16px; }}
"""

LOGIN_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Sign In - {issuer_name}</title>
    <style>""" + _BASE_STYLE + """
        .field {{ margin-bottom: 16px; }}
        .field label {{ display: block; font-size: 13px; margin-bottom: 6px; }}
        .field input {{ width: 100%; box-sizing: border-box; padding: 10px 12px;
                       border: 1px solid #BCCCDC; border-radius: 6px; font-size: 15px; }}
        .field input:focus {{ outline: 2px solid #2F6FEB; border-color: transparent; }}
    </style>
</head>
<body>
    <main class="container">
        <h1>Sign In</h1>
        <p>{client_name} wants you to sign in with {issuer_name}.</p>
        {error}
        <form method="POST" action="/account/login">
            <input type="hidden" name="return_url" value="{return_url}">
            <div class="field">
                <label for="username">Username</label>
                <input id="username" name="username" value="{username}" autocomplete="username" autofocus>
            </div>
            <div class="field">
                <label for="password">Password</label>
                <input id="password" name="password" type="password" autocomplete="current-password">
            </div>
            <label class="check">
                <input type="checkbox" name="remember_me" value="true"> Keep me signed in
            </label>
            <div class="actions">
                <button type="submit" name="action" value="login">Sign In</button>
                <button type="submit" name="action" value="cancel" class="secondary">Cancel</button>
            </div>
        </form>
    </main>
</body>
</html>
"""

CONSENT_SCOPE = """
            <label class="check scope">
                <input type="checkbox" name="scopes" value="{name}" checked{disabled}> {display_name}
            </label>"""

CONSENT_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorize - {issuer_name}</title>
    <style>""" + _BASE_STYLE + """
        .client {{ display: flex; gap: 12px; align-items: center; margin: 20px 0; }}
        .badge {{ width: 44px; height: 44px; border-radius: 50%; background: #2F6FEB; color: #FFFFFF;
                 display: grid; place-items: center; font-weight: 600; font-size: 20px; }}
        .scope {{ padding: 10px 12px; border: 1px solid #D9E2EC; border-radius: 6px; margin-bottom: 8px; color: #1F2933; }}
    </style>
</head>
<body>
    <main class="container">
        <h1>Authorize Access</h1>
        <div class="muted">Signed in as {username}</div>
        <div class="client">
            <div class="badge">{client_initial}</div>
            <div><strong>{client_name}</strong><div class="muted">would like access to:</div></div>
        </div>
        <form method="POST" action="/consent">
            <input type="hidden" name="return_url" value="{return_url}">
            <div>{scopes}
            </div>
            <label class="check">
                <input type="checkbox" name="remember_consent" value="true" checked> Remember my decision
            </label>
            <div class="actions">
                <button type="submit" name="action" value="allow">Allow</button>
                <button type="submit" name="action" value="deny" class="secondary">Deny</button>
            </div>
        </form>
    </main>
</body>
</html>
"""

ERROR_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Error - {issuer_name}</title>
    <style>""" + _BASE_STYLE + """
    </style>
</head>
<body>
    <main class="container">
        <h1>{title}</h1>
        <div class="error">{message}</div>
        <div class="info">Error code: {error}</div>
    </main>
</body>
</html>
"""

LOGGED_OUT_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Signed Out - {issuer_name}</title>
    <style>""" + _BASE_STYLE + """
    </style>
</head>
<body>
    <main class="container">
        <h1>Signed Out</h1>
        <p>You have been signed out of {issuer_name}. You can close this window.</p>
    </main>
</body>
</html>
"""
