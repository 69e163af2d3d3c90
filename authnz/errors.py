"""
errors.py — OAuth 2.0 error taxonomy and the error dispatcher.

Every protocol failure is an ``OIDCError`` tagged with an ``ErrorCode``.
The dispatcher decides where the resource owner ends up:

  - flagged errors, or errors without a validated redirect_uri, go to the
    operator's generic error page (``error_url``);
  - everything else is delivered to the client's redirect_uri.

Token endpoint errors never redirect; they become JSON bodies.
"""

import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Any

from starlette.responses import JSONResponse, RedirectResponse

from authnz.constants import AUTH_METHOD_SECRET_BASIC


class ErrorCode(Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    INVALID_SCOPE = "invalid_scope"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"


ERROR_DESCRIPTIONS = {
    "malformed_url": "malformed url",
    "duplicate_query_parameter": "duplicate query parameter",
    "url_fragment": "url must not contain a fragment",
    "missing_tls": "must use TLS",
    "invalid_http_method": "invalid http method",
    "invalid_content_type": "invalid content type",
    "missing_response_type": "missing response_type",
    "unsupported_response_type": "unsupported response_type",
    "missing_client_id": "missing client_id",
    "missing_redirect_uri": "missing redirect_uri",
    "invalid_redirect_uri": "invalid redirect_uri",
    "missing_mandatory_parameter": "missing mandatory parameter",
    "invalid_code_challenge_method": "invalid code_challenge_method",
    "invalid_scope": "invalid scope",
    "scope_error": "requested scope exceeds the allowed scope",
    "unregistered_client": "unregistered client",
    "client_id_mismatch": "client_id mismatch",
    "client_lookup_failed": "client lookup failed",
    "invalid_grant_type": "invalid grant_type",
    "redirect_uri_mismatch": "redirect_uri mismatch",
    "invalid_client_secret": "invalid client_secret",
    "multiple_client_authentication_mechanism": "multiple client authentication mechanisms",
    "public_client_must_not_authenticate": "public clients must not authenticate",
    "invalid_client_authentication": "invalid client authentication",
    "missing_client_authentication_parameters": "missing client authentication parameters",
    "confidential_clients_must_authenticate": "confidential clients must authenticate",
    "unsupported_grant_type_for_client": "unsupported grant_type for client",
    "unsupported_grant_type": "unsupported grant_type",
    "invalid_grant": "invalid grant",
    "missing_code_verifier": "missing code_verifier",
    "denied_authorization_request": "the resource owner denied the request",
    "unknown_session": "unknown or expired authorization session",
    "invalid_step": "the authorization session is not waiting for this step",
    "unable_to_provide_claims": "unable to provide claims",
    "server_error": "the authorization server encountered an unexpected condition",
}


class OIDCError(Exception):
    """A protocol error.

    ``flagged`` errors must never be delivered to a redirect_uri, because
    the redirect_uri has not been validated against a registered client.
    """

    def __init__(
        self,
        kind: ErrorCode,
        description: str | None = None,
        hint: str | None = None,
        flagged: bool = False,
        state: str | None = None,
        redirect_uri: str | None = None,
    ):
        super().__init__(description or kind.value)
        self.kind = kind
        self.description = description
        self.hint = hint
        self.flagged = flagged
        self.state = state
        self.redirect_uri = redirect_uri

    def __repr__(self) -> str:
        return (f"OIDCError({self.kind.value!r}, {self.description!r}, "
                f"flagged={self.flagged})")


def server_error(hint: str | None = None) -> OIDCError:
    """Wrap an unexpected failure without leaking its message."""
    return OIDCError(ErrorCode.SERVER_ERROR, ERROR_DESCRIPTIONS["server_error"], hint)


@dataclass
class ErrorDTO:
    error: str
    error_description: str | None = None
    error_hint: str | None = None
    state: str | None = None
    redirect_uri: str | None = None
    flagged: bool = False

    @classmethod
    def from_error(cls, error: OIDCError, development: bool = False) -> "ErrorDTO":
        return cls(
            error=error.kind.value,
            error_description=error.description,
            error_hint=error.hint if development else None,
            state=error.state,
            redirect_uri=error.redirect_uri,
            flagged=error.flagged,
        )

    def to_params(self) -> dict[str, str]:
        """Wire representation: redirect query parameters or JSON body."""
        params = {"error": self.error}
        for key in ("error_description", "error_hint", "state"):
            value = getattr(self, key)
            if value is not None:
                params[key] = value
        return params


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def construct_redirect_uri(base: str, **params: Any) -> str:
    """Append ``params`` to ``base`` keeping any query it already carries."""
    parts = urllib.parse.urlsplit(str(base))
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, str(v)) for k, v in params.items() if v is not None)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def handle_error(dto: ErrorDTO, options) -> RedirectResponse:
    """Route an authorization flow error to the client or the error page."""
    if dto.flagged or not dto.redirect_uri:
        target = options.error_url
    else:
        target = dto.redirect_uri
    return RedirectResponse(construct_redirect_uri(target, **dto.to_params()), status_code=302)


def token_error_response(dto: ErrorDTO, auth_method: str | None = None) -> JSONResponse:
    """Token endpoint errors: 400, or 401 + WWW-Authenticate for invalid_client."""
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    status = 400
    if dto.error == ErrorCode.INVALID_CLIENT.value:
        status = 401
        headers["WWW-Authenticate"] = auth_method or AUTH_METHOD_SECRET_BASIC
    return JSONResponse(dto.to_params(), status_code=status, headers=headers)
