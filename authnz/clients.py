"""
clients.py — client lookup, validation and authentication.

Authorize time: ``validate_client`` checks a resolved client against the
request. Token time: ``authenticate_client`` reads credentials from the
Basic header or the body (never both), then ``validate_token_client``
reconciles the result with the body's client_id.
"""

import base64
import binascii
import hmac
import logging
import urllib.parse
from dataclasses import dataclass

from starlette.datastructures import Headers

from authnz.audit import _audit
from authnz.constants import (
    AUTH_METHOD_SECRET_BASIC,
    AUTH_METHOD_SECRET_POST,
    CLIENT_ID,
    CLIENT_SECRET,
    CLIENT_TYPE_CONFIDENTIAL,
    CLIENT_TYPE_PUBLIC,
)
from authnz.errors import ERROR_DESCRIPTIONS, ErrorCode, OIDCError
from authnz.hooks import call_hook
from authnz.models import OAuthClient, TokenRequestMeta
from authnz.validation import scope_set, validate_scope_subset

logger = logging.getLogger("authnz")


def _secrets_match(expected: str | None, given: str | None) -> bool:
    if expected is None or given is None:
        return False
    return hmac.compare_digest(expected.encode(), given.encode())


async def find_client(client_id: str, options) -> OAuthClient | None:
    """Static registry first, then the ``get_client`` callback."""
    for client in options.clients:
        if client.client_id == client_id:
            return client

    if options.get_client is None:
        return None

    try:
        return await call_hook(options.get_client, client_id)
    except Exception:
        logger.exception("get_client failed for %s", client_id)
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["client_lookup_failed"],
            "get_client raised an exception",
            flagged=True,
        ) from None


def validate_client(
    client: OAuthClient | None,
    client_id: str,
    redirect_uri: str,
    grant_type: str | None = None,
    client_secret: str | None = None,
) -> None:
    if client is None:
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["unregistered_client"],
            "We couldn't find any client by the provided client_id",
            flagged=True,
        )

    if client.client_id != client_id:
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["client_id_mismatch"],
            "The resolved client has a different client_id. Likely a bug in get_client",
            flagged=True,
        )

    if grant_type and grant_type not in client.grant_types:
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["invalid_grant_type"],
            "The client can not use this grant type",
            flagged=True,
        )

    # Exact match only.
    if redirect_uri not in client.redirect_uris:
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["redirect_uri_mismatch"],
            "redirect_uri is not registered for this client",
            flagged=True,
        )

    if client_secret and not _secrets_match(client.client_secret, client_secret):
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_secret"],
            "Invalid client secret",
        )


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

@dataclass
class ClientAuthentication:
    auth_type: str | None = None
    client: OAuthClient | None = None


def _basic_credentials(authorization: str) -> tuple[str, str]:
    """Decode ``Basic base64(urlencode(id):urlencode(secret))``."""
    encoded = authorization.split(" ", 1)[1].strip() if " " in authorization else ""
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_authentication"],
            "Malformed Basic authorization header",
        ) from None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep or not client_id:
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_authentication"],
            "Malformed Basic authorization header",
        )
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(client_secret)


async def authenticate_client(headers: Headers, body: dict[str, str], options) -> ClientAuthentication:
    """client_secret_basic or client_secret_post, never both."""
    result = ClientAuthentication()
    client_id = client_secret = None

    authorization = headers.get("authorization", "")
    if authorization[:6].lower() == "basic ":
        client_id, client_secret = _basic_credentials(authorization)
        result.auth_type = AUTH_METHOD_SECRET_BASIC

    if body.get(CLIENT_ID) and body.get(CLIENT_SECRET):
        if result.auth_type is not None:
            raise OIDCError(
                ErrorCode.INVALID_REQUEST,
                ERROR_DESCRIPTIONS["multiple_client_authentication_mechanism"],
                "The client tried to authenticate with multiple mechanisms",
            )
        client_id, client_secret = body[CLIENT_ID], body[CLIENT_SECRET]
        result.auth_type = AUTH_METHOD_SECRET_POST

    if result.auth_type is None:
        return result

    client = await find_client(client_id, options)
    if client is None:
        _audit(options, "client_authentication_failed", client_id=client_id, reason="unknown_client")
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_authentication"],
            "Unknown client",
        )

    if not client_secret:
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["missing_client_authentication_parameters"],
            "Mandatory parameters missing for client authentication",
        )

    if client.client_type == CLIENT_TYPE_PUBLIC:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["public_client_must_not_authenticate"],
            "Public clients must not authenticate with the authorization server",
        )

    if not _secrets_match(client.client_secret, client_secret):
        _audit(options, "client_authentication_failed", client_id=client_id, reason="bad_secret")
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_authentication"],
            "Failed client authentication",
        )

    result.client = client
    return result


async def validate_token_client(
    authenticated: OAuthClient | None,
    meta: TokenRequestMeta,
    options,
) -> OAuthClient:
    """Reconcile the authenticated client with the body's client_id."""
    if authenticated is None and not meta.client_id:
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["missing_client_authentication_parameters"],
            "Authentication is needed, or client_id for public clients",
        )

    if authenticated and meta.client_id and authenticated.client_id != meta.client_id:
        raise OIDCError(
            ErrorCode.INVALID_CLIENT,
            ERROR_DESCRIPTIONS["invalid_client_authentication"],
            "client_id in the body differs from the authenticated client",
        )

    client = authenticated
    if client is None:
        client = await find_client(meta.client_id, options)
        if client is None:
            raise OIDCError(
                ErrorCode.INVALID_CLIENT,
                ERROR_DESCRIPTIONS["invalid_client_authentication"],
                "Invalid client",
            )
        if client.client_type == CLIENT_TYPE_CONFIDENTIAL:
            raise OIDCError(
                ErrorCode.INVALID_CLIENT,
                ERROR_DESCRIPTIONS["confidential_clients_must_authenticate"],
                "Confidential clients must authenticate",
            )

    if meta.grant_type not in client.grant_types:
        raise OIDCError(
            ErrorCode.UNAUTHORIZED_CLIENT,
            ERROR_DESCRIPTIONS["unsupported_grant_type_for_client"],
            "Invalid grant type for this client",
        )

    if meta.scope:
        allowed = scope_set(client.scope or options.default_scope)
        meta.scope_set = validate_scope_subset(
            scope_set(meta.scope), allowed, ERROR_DESCRIPTIONS["scope_error"])

    return client
