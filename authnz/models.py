"""
models.py — clients, in-flight authorization state, grants.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from authnz.constants import (
    AUTH_METHOD_SECRET_BASIC,
    CLIENT_TYPE_CONFIDENTIAL,
    GRANT_AUTHORIZATION_CODE,
    STEP_CONSENT,
    STEP_LOGIN,
)

Claims = dict[str, Any]


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    redirect_uris: list[str]
    client_secret: str | None = None
    grant_types: list[str] = field(default_factory=lambda: [GRANT_AUTHORIZATION_CODE])
    scope: str | None = None
    trusted: bool = False
    client_type: str = CLIENT_TYPE_CONFIDENTIAL
    token_endpoint_auth_method: str = AUTH_METHOD_SECRET_BASIC
    client_name: str = ""

    def __post_init__(self):
        if not self.client_id:
            raise ValueError("client_id is required")
        if not self.redirect_uris:
            raise ValueError(f"client {self.client_id}: at least one redirect_uri is required")


class FlowState(Enum):
    VALIDATING = "validating"
    PENDING_LOGIN = "pending_login"
    PENDING_CONSENT = "pending_consent"
    GRANTED = "granted"
    ERROR = "error"


@dataclass
class Step:
    type: str
    active: bool = False
    completed: bool = False


def _default_steps() -> list[Step]:
    return [Step(STEP_LOGIN), Step(STEP_CONSENT)]


@dataclass
class AuthorizationRequestMeta:
    uid: str
    client: OAuthClient
    response_type: str
    client_id: str
    redirect_uri: str
    original_uri: str
    scope: str | None = None
    scope_set: set[str] = field(default_factory=set)
    state: str | None = None
    nonce: str | None = None
    prompt: str | None = None
    claims_request: str | None = None
    resource: str | None = None
    request: str | None = None
    request_uri: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    steps: list[Step] = field(default_factory=_default_steps)
    claims: Claims | None = None
    status: FlowState = FlowState.VALIDATING
    created_at: float = field(default_factory=time.time)
    # last status change; step expiry counts from here
    updated_at: float = field(default_factory=time.time)

    def step(self, step_type: str) -> Step:
        return next(s for s in self.steps if s.type == step_type)


@dataclass
class Grant:
    id: str
    code: str
    client_id: str
    redirect_uri: str
    claims: Claims
    expires_at: float
    scope: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None
    used: bool = False

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass
class TokenRequestMeta:
    grant_type: str
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    code: str | None = None
    code_verifier: str | None = None
    scope: str | None = None
    scope_set: set[str] | None = None
