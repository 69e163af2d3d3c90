"""Shared fixtures: a registered client, development options, request builder."""
import base64
import sys
import urllib.parse
from pathlib import Path

import pytest

# Add project root to path so we can import authnz and server
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from starlette.requests import Request

from authnz import OAuthClient, OIDCOptions

BASE = "http://localhost:8300"
CALLBACK = "http://localhost:9000/callback"


def build_request(method="GET", path="/api/oidc/authorize", query="", body=b"",
                  headers=None, cookies=None, scheme="http", host="localhost:8300"):
    """A Starlette Request backed by a one-shot receive channel."""
    raw_headers = [(b"host", host.encode())]
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode(), value.encode()))
    if cookies:
        cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie.encode()))
    if isinstance(query, dict):
        query = urllib.parse.urlencode(query)
    if isinstance(body, dict):
        body = urllib.parse.urlencode(body).encode()
        raw_headers.append((b"content-type", b"application/x-www-form-urlencoded"))

    scope = {
        "type": "http",
        "method": method,
        "scheme": scheme,
        "path": path,
        "root_path": "",
        "query_string": query.encode(),
        "headers": raw_headers,
        "server": ("localhost", 8300),
    }
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{urllib.parse.quote_plus(client_id)}:{urllib.parse.quote_plus(client_secret)}"
    return "Basic " + base64.b64encode(raw.encode()).decode()


def location_params(response) -> tuple[str, dict[str, str]]:
    """Split a redirect's Location into (url without query, query dict)."""
    location = response.headers["location"]
    parts = urllib.parse.urlsplit(location)
    base = urllib.parse.urlunsplit(parts._replace(query=""))
    return base, dict(urllib.parse.parse_qsl(parts.query))


def set_cookies(response) -> dict[str, str]:
    """Raw Set-Cookie headers keyed by cookie name."""
    cookies = {}
    for key, value in response.raw_headers:
        if key == b"set-cookie":
            header = value.decode()
            cookies[header.split("=", 1)[0]] = header
    return cookies


def fail_grant_inserts(store, exc: BaseException):
    """Make ``store`` raise ``exc`` on grant inserts; returns the original insert."""
    insert = store.insert

    async def failing(table, payload, key=None):
        if table == "grant":
            raise exc
        return await insert(table, payload, key)

    store.insert = failing
    return insert


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def registered_client():
    return OAuthClient(
        client_id="foo",
        client_secret="bar",
        redirect_uris=[CALLBACK],
        scope="openid email profile",
        client_name="Foo App",
    )


@pytest.fixture
def public_client():
    return OAuthClient(
        client_id="spa",
        redirect_uris=[CALLBACK],
        scope="openid email",
        client_type="public",
    )


@pytest.fixture
def user_claims():
    return {"sub": "user-1", "email": "user@example.com", "email_verified": True, "name": "User One"}


@pytest.fixture
def options(registered_client, public_client, user_claims):
    return OIDCOptions(
        base=BASE,
        get_user=lambda request, scopes: dict(user_claims),
        clients=[registered_client, public_client],
        show_consent=lambda meta, claims: False,
        signing_key="test-signing-key-0123456789abcdef0123",
        development=True,
    )
