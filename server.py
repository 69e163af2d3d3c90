#!/usr/bin/env python3
"""
authnz demo host — a minimal application embedding the authorization server.

Mounts the authnz handler under /api/oidc and serves the pages the flow
redirects to: sign-in, consent, error, and a demo client callback. Clients
and demo users are loaded from clients.yaml.

    AUTHNZ_ENV=development python server.py --port 8300
"""

import argparse
import hashlib
import hmac
import html as html_mod
import logging
import os
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response
from starlette.routing import Mount, Route

from authnz import OAuthClient, create_service, filter_claims_by_scope

logger = logging.getLogger("authnz-demo")

# ---------------------------------------------------------------------------
# Configuration: env vars
# ---------------------------------------------------------------------------
_BASE_URL = os.environ.get("AUTHNZ_BASE", "http://localhost:8300")
_SIGNING_KEY = os.environ.get("AUTHNZ_SIGNING_KEY", "")

USER_COOKIE = "authnz_demo_user"


# ---------------------------------------------------------------------------
# Client and user registry
# ---------------------------------------------------------------------------

@dataclass
class DemoUser:
    username: str
    password: str
    claims: dict[str, Any] = field(default_factory=dict)


def _load_registry(config_path: Path | None = None) -> tuple[list[OAuthClient], dict[str, DemoUser]]:
    """Load clients and demo users from clients.yaml."""
    if config_path is None:
        config_path = Path(__file__).parent / "clients.yaml"
    if not config_path.exists():
        example = Path(__file__).parent / "clients.example.yaml"
        msg = f"Client config not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw:
        raise SystemExit(f"Invalid clients.yaml: expected top-level 'clients' key in {config_path}")

    clients: list[OAuthClient] = []
    for client_id, cfg in (raw["clients"] or {}).items():
        if not isinstance(cfg, dict) or not cfg.get("redirect_uris"):
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: 'redirect_uris' is required")
        try:
            clients.append(OAuthClient(
                client_id=str(client_id),
                redirect_uris=list(cfg["redirect_uris"]),
                client_secret=cfg.get("client_secret"),
                grant_types=list(cfg.get("grant_types", ["authorization_code"])),
                scope=cfg.get("scope"),
                trusted=bool(cfg.get("trusted", False)),
                client_type=cfg.get("client_type", "confidential"),
                token_endpoint_auth_method=cfg.get("token_endpoint_auth_method", "client_secret_basic"),
                client_name=cfg.get("client_name", str(client_id)),
            ))
        except ValueError as e:
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: {e}")

    if not clients:
        raise SystemExit(f"No clients defined in {config_path}")

    users: dict[str, DemoUser] = {}
    for username, cfg in (raw.get("users") or {}).items():
        if not isinstance(cfg, dict) or "password" not in cfg:
            raise SystemExit(f"Invalid user '{username}' in {config_path}: 'password' is required")
        claims = dict(cfg.get("claims") or {})
        claims.setdefault("sub", str(username))
        users[str(username)] = DemoUser(str(username), str(cfg["password"]), claims)

    return clients, users


# ---------------------------------------------------------------------------
# Demo session cookie
# ---------------------------------------------------------------------------

def _sign(value: str, key: str) -> str:
    mac = hmac.new(key.encode(), value.encode(), hashlib.sha256).hexdigest()
    return f"{value}.{mac}"


def _unsign(token: str, key: str) -> str | None:
    value, _, mac = token.rpartition(".")
    if not value:
        return None
    expected = hmac.new(key.encode(), value.encode(), hashlib.sha256).hexdigest()
    return value if hmac.compare_digest(mac, expected) else None


def _same_origin(url: str, base: str) -> bool:
    target, origin = urllib.parse.urlsplit(url), urllib.parse.urlsplit(base)
    return (target.scheme, target.netloc) == (origin.scheme, origin.netloc)


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }
        .card.error { border-color: #ff4444; text-align: center; }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .error h1 { color: #ff4444; }
        .client { color: #ff6b9d; font-weight: 600; }
        .perms { background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem; }
        .perms li { margin: 0.3rem 0; }
        input { width: 100%; padding: 0.6rem; border: 1px solid #2a2a4a; border-radius: 6px;
            background: #12122a; color: #e0e0e0; font-size: 1rem; margin: 0.4rem 0 0.8rem 0;
            box-sizing: border-box; }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        button { flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }
        .approve { background: #00d4ff; color: #0a0a1a; }
        .deny { background: #2a2a4a; color: #e0e0e0; }
        code { word-break: break-all; color: #00d4ff; }
"""


def _page(title: str, body: str, card_class: str = "card") -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>authnz — {html_mod.escape(title)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="{card_class}">
{body}
    </div>
</body>
</html>"""


def _sign_in_page(redirect_to: str, message: str = "") -> str:
    safe_redirect = html_mod.escape(redirect_to, quote=True)
    notice = f'<p class="client">{html_mod.escape(message)}</p>' if message else ""
    return _page("Sign in", f"""
        <h1>Sign in</h1>
        {notice}
        <form method="POST" action="">
            <input type="hidden" name="redirectTo" value="{safe_redirect}">
            <label for="username">Username</label>
            <input id="username" name="username" autocomplete="username" required>
            <label for="password">Password</label>
            <input type="password" id="password" name="password" autocomplete="current-password" required>
            <div class="buttons">
                <button type="submit" class="approve">Sign in</button>
            </div>
        </form>""")


def _consent_page(redirect_to: str, client_name: str, scopes: list[str]) -> str:
    safe_redirect = html_mod.escape(redirect_to, quote=True)
    items = "".join(f"<li>{html_mod.escape(s)}</li>" for s in scopes) or "<li>basic sign-in</li>"
    return _page("Authorize", f"""
        <h1>Authorize</h1>
        <p><span class="client">{html_mod.escape(client_name)}</span> wants access to your account.</p>
        <div class="perms">
            <strong>Requested scopes:</strong>
            <ul>{items}</ul>
        </div>
        <form method="POST" action="{safe_redirect}">
            <div class="buttons">
                <button type="submit" name="decision" value="grant" class="approve">Allow</button>
                <button type="submit" name="decision" value="decline" class="deny">Deny</button>
            </div>
        </form>""")


def _error_page(error: str, description: str) -> str:
    return _page("Error", f"""
        <h1>{html_mod.escape(error)}</h1>
        <p>{html_mod.escape(description)}</p>""", card_class="card error")


def _callback_page(params: dict[str, str]) -> str:
    rows = "".join(
        f"<li>{html_mod.escape(k)}: <code>{html_mod.escape(v)}</code></li>" for k, v in params.items()
    )
    return _page("Callback", f"""
        <h1>Client callback</h1>
        <div class="perms"><ul>{rows}</ul></div>""")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    clients: list[OAuthClient],
    users: dict[str, DemoUser],
    base: str = _BASE_URL,
    signing_key: str = "",
    development: bool | None = None,
) -> Starlette:
    """Starlette app hosting authnz plus the pages its flow redirects to."""
    signing_key = signing_key or _SIGNING_KEY or None

    def get_user(request: Request, scopes: set[str]) -> dict[str, Any] | None:
        token = request.cookies.get(USER_COOKIE)
        username = _unsign(token, service.options.signing_key) if token else None
        user = users.get(username) if username else None
        return dict(user.claims) if user else None

    kwargs: dict[str, Any] = {
        "base": base,
        "get_user": get_user,
        "get_claims": filter_claims_by_scope,
        "clients": clients,
    }
    if signing_key:
        kwargs["signing_key"] = signing_key
    if development is not None:
        kwargs["development"] = development
    service = create_service(**kwargs)
    options = service.options

    async def sign_in(request: Request) -> Response:
        redirect_to = request.query_params.get("redirectTo", "")
        if request.method == "GET":
            return HTMLResponse(_sign_in_page(redirect_to))

        form = await request.form()
        redirect_to = str(form.get("redirectTo", ""))
        username = str(form.get("username", ""))
        user = users.get(username)
        if user is None or not hmac.compare_digest(user.password, str(form.get("password", ""))):
            logger.info("sign-in failed for %s", username or "<empty>")
            return HTMLResponse(_sign_in_page(redirect_to, "Invalid username or password"), status_code=401)
        if not _same_origin(redirect_to, options.base):
            return HTMLResponse(_error_page("invalid_request", "Untrusted redirect target"), status_code=400)

        response = RedirectResponse(redirect_to, status_code=303)
        response.set_cookie(
            USER_COOKIE,
            _sign(username, options.signing_key),
            httponly=True,
            samesite="lax",
            secure=not options.development,
        )
        return response

    async def consent(request: Request) -> Response:
        redirect_to = request.query_params.get("redirectTo", "")
        if not _same_origin(redirect_to, options.base):
            return HTMLResponse(_error_page("invalid_request", "Untrusted redirect target"), status_code=400)
        # .../step/{uid}/decision
        parts = urllib.parse.urlsplit(redirect_to).path.rstrip("/").split("/")
        meta = await options.database.fetch("session", parts[-2]) if len(parts) >= 3 else None
        if meta is None:
            return HTMLResponse(_error_page("invalid_request", "Unknown authorization session"), status_code=400)
        return HTMLResponse(_consent_page(
            redirect_to,
            meta.client.client_name or meta.client_id,
            sorted(meta.scope_set),
        ))

    async def error(request: Request) -> Response:
        params = request.query_params
        return HTMLResponse(_error_page(
            params.get("error", "error"),
            params.get("error_description", "The request could not be completed"),
        ), status_code=400)

    async def callback(request: Request) -> Response:
        return HTMLResponse(_callback_page(dict(request.query_params)))

    routes = [
        Route("/auth/sign-in", sign_in, methods=["GET", "POST"]),
        Route("/auth/oidc/consent", consent, methods=["GET"]),
        Route("/auth/oidc/error", error, methods=["GET"]),
        Route("/demo/callback", callback, methods=["GET"]),
        Mount(options.mount_path, app=service.handler),
    ]
    app = Starlette(routes=routes)
    app.state.authnz = service
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON lines to ~/.authnz/audit.log
    _audit_log_path = Path.home() / ".authnz" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("authnz-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="authnz demo authorization server")
    parser.add_argument("--port", type=int, default=8300)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--clients", type=Path, default=None, help="path to clients.yaml")
    args = parser.parse_args()

    import uvicorn

    clients, users = _load_registry(args.clients)
    app = create_app(clients, users)

    logger.info(f"authnz: starting HTTP server on {args.host}:{args.port} ({len(clients)} clients)")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info", proxy_headers=True, forwarded_allow_ips="*")
