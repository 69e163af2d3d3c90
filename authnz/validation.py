"""
validation.py — stateless request validators.

Each validator raises an ``OIDCError`` on violation and never corrects the
request, except ``sanitize_params`` which drops empty and unrecognised
parameters as RFC 6749 §3.1 requires.
"""

import urllib.parse
from collections import Counter
from collections.abc import Iterable

from authnz.constants import RESPONSE_TYPE_CODE, SENSITIVE_PARAMS
from authnz.errors import ERROR_DESCRIPTIONS, ErrorCode, OIDCError


def parse_url(uri: str) -> urllib.parse.SplitResult:
    try:
        url = urllib.parse.urlsplit(str(uri))
        url.port  # raises on a malformed port
    except ValueError:
        raise OIDCError(ErrorCode.INVALID_REQUEST, ERROR_DESCRIPTIONS["malformed_url"], uri)
    if not url.scheme or not url.netloc:
        raise OIDCError(ErrorCode.INVALID_REQUEST, ERROR_DESCRIPTIONS["malformed_url"], uri)
    return url


def reject_fragment(url: urllib.parse.SplitResult) -> None:
    if url.fragment:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["url_fragment"],
            "uri must not contain a fragment",
        )


def require_tls(url: urllib.parse.SplitResult, development: bool = False) -> None:
    if development:
        return
    if url.scheme != "https":
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["missing_tls"],
            "The use of the https protocol is mandatory",
        )


def require_method(method: str | None, allowed: Iterable[str]) -> None:
    allowed = [m.upper() for m in allowed]
    if not method or method.upper() not in allowed:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_http_method"],
            f"Only HTTP {' or '.join(allowed)} allowed. Found: {method}",
        )


def reject_duplicate_params(
    params: list[tuple[str, str]],
    sensitive_keys: Iterable[str] = SENSITIVE_PARAMS,
) -> None:
    """Reject any parameter sent more than once.

    A duplicated client_id or redirect_uri is flagged: an attacker may have
    appended a second redirect_uri hoping the code gets delivered there.
    """
    sensitive_keys = set(sensitive_keys)
    counts = Counter(key for key, _ in params)
    for key, count in counts.items():
        if count > 1:
            raise OIDCError(
                ErrorCode.INVALID_REQUEST,
                ERROR_DESCRIPTIONS["duplicate_query_parameter"],
                key,
                flagged=key in sensitive_keys,
            )


def sanitize_params(params: list[tuple[str, str]], allowed: Iterable[str]) -> dict[str, str]:
    """Drop empty and unrecognised parameters (RFC 6749 §3.1, §3.2)."""
    allowed = set(allowed)
    return {k: v for k, v in params if v != "" and k in allowed}


def require_response_type(value: str | None) -> None:
    if value is None:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["missing_response_type"],
            f"Possible values: {RESPONSE_TYPE_CODE}",
        )
    if value != RESPONSE_TYPE_CODE:
        raise OIDCError(
            ErrorCode.UNSUPPORTED_RESPONSE_TYPE,
            ERROR_DESCRIPTIONS["unsupported_response_type"],
            f"Possible values: {RESPONSE_TYPE_CODE}",
        )


def require_client_id(client_id: str | None) -> None:
    if not client_id:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["missing_client_id"],
            "client_id",
            flagged=True,
        )


def require_redirect_uri(redirect_uri: str | None) -> None:
    if not redirect_uri:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["missing_redirect_uri"],
            "redirect_uri",
            flagged=True,
        )
    try:
        parse_url(redirect_uri)
    except OIDCError:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_redirect_uri"],
            "redirect_uri",
            flagged=True,
        )


def validate_param_value(value: str | None, allowed: Iterable[str],
                         description: str | None = None) -> None:
    if not value or value not in set(allowed):
        raise OIDCError(ErrorCode.INVALID_REQUEST, description, "Invalid param value")


def scope_set(scope: str | None) -> set[str]:
    return {s for s in (scope or "").split(" ") if s}


def validate_scope_subset(requested: set[str], allowed: set[str],
                          description: str | None = None) -> set[str]:
    """Return ``requested & allowed``; reject anything outside ``allowed``."""
    difference = requested - allowed
    if difference:
        raise OIDCError(
            ErrorCode.INVALID_SCOPE,
            description or ERROR_DESCRIPTIONS["invalid_scope"],
            f"The invalid scope value(s): {','.join(sorted(difference))}",
        )
    return requested & allowed


def media_type(content_type: str | None) -> str:
    """``application/x-www-form-urlencoded; charset=UTF-8`` → the bare type."""
    return (content_type or "").split(";")[0].strip().lower()
