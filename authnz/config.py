"""
config.py — authorization server options.

``base`` is the public origin of the host application. All other URLs
default relative to it. ``development`` relaxes TLS and cookie rules and
exposes error hints; it defaults from ``AUTHNZ_ENV``.
"""

import logging
import os
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from authnz.constants import SCOPE_EMAIL, SCOPE_OPENID
from authnz.models import AuthorizationRequestMeta, Claims, OAuthClient
from authnz.store import InMemoryStore, Store

_URL = TypeAdapter(AnyHttpUrl)

LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO, 2: logging.DEBUG}


def _development_from_env() -> bool:
    return os.environ.get("AUTHNZ_ENV", "").lower() == "development"


def default_show_consent(meta: AuthorizationRequestMeta, claims: Claims | None = None) -> bool:
    """Trusted clients and openid-only requests skip the consent screen."""
    if meta.client.trusted:
        return False
    if not meta.scope_set or meta.scope_set == {SCOPE_OPENID}:
        return False
    return True


def _validate_url(name: str, value: str) -> str:
    try:
        _URL.validate_python(str(value))
    except ValidationError:
        raise ValueError(f"{name}: invalid URL {value!r}") from None
    return str(value)


@dataclass
class OIDCOptions:
    base: str
    get_user: Callable[..., Any]
    mount_path: str = "/api/oidc"
    get_claims: Callable[..., Any] | None = None
    signing_key: str = field(default_factory=lambda: secrets.token_hex(32))
    database: Store = field(default_factory=InMemoryStore)
    sign_in_url: str | None = None
    consent_url: str | None = None
    error_url: str | None = None
    clients: list[OAuthClient] = field(default_factory=list)
    get_client: Callable[..., Any] | None = None
    show_consent: Callable[..., Any] = default_show_consent
    default_scope: str = f"{SCOPE_OPENID} {SCOPE_EMAIL}"
    authorization_code_ttl: int = 120  # seconds
    log_level: int = 1
    development: bool = field(default_factory=_development_from_env)
    observer: Callable[[str, dict[str, Any]], None] | None = None

    def __post_init__(self):
        self.base = _validate_url("base", self.base).rstrip("/")
        self.sign_in_url = _validate_url(
            "sign_in_url", self.sign_in_url or f"{self.base}/auth/sign-in")
        self.consent_url = _validate_url(
            "consent_url", self.consent_url or f"{self.base}/auth/oidc/consent")
        self.error_url = _validate_url(
            "error_url", self.error_url or f"{self.base}/auth/oidc/error")
        self.mount_path = "/" + self.mount_path.strip("/")

        if not self.clients and self.get_client is None:
            raise ValueError("Either clients or get_client must be configured")
        seen: set[str] = set()
        for client in self.clients:
            if client.client_id in seen:
                raise ValueError(f"Duplicate client_id: {client.client_id}")
            seen.add(client.client_id)

        if not self.signing_key:
            raise ValueError("signing_key must not be empty")
        if self.authorization_code_ttl <= 0:
            raise ValueError("authorization_code_ttl must be positive")

    @property
    def issuer(self) -> str:
        return self.base

    def endpoint(self, path: str) -> str:
        return f"{self.base}{self.mount_path}/{path.lstrip('/')}"

    def step_url(self, uid: str, step: str) -> str:
        return self.endpoint(f"step/{uid}/{step}")
