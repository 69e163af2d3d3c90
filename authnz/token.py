"""
token.py — the token endpoint.

Redeems an authorization code for an access token, plus an ID token when
``openid`` was granted. Errors always end in a JSON body, never a redirect.
"""

import logging
import urllib.parse

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from authnz.audit import _audit
from authnz.clients import authenticate_client, validate_token_client
from authnz.constants import (
    CLIENT_ID,
    CLIENT_SECRET,
    CODE,
    CODE_VERIFIER,
    CONTENT_TYPE_FORM,
    GRANT_AUTHORIZATION_CODE,
    GRANT_TYPE,
    REDIRECT_URI,
    SCOPE,
    SCOPE_OPENID,
    TOKEN_EXPIRY_SECONDS,
    TOKEN_REQUEST_GRANTS,
)
from authnz.errors import (
    ERROR_DESCRIPTIONS,
    ErrorCode,
    ErrorDTO,
    OIDCError,
    server_error,
    token_error_response,
)
from authnz.grants import consume_grant, validate_grant
from authnz.models import TokenRequestMeta
from authnz.tokens import generate_access_token, generate_id_token
from authnz.validation import (
    media_type,
    parse_url,
    reject_duplicate_params,
    reject_fragment,
    require_method,
    require_tls,
    sanitize_params,
    scope_set,
)

logger = logging.getLogger("authnz")


async def _read_form(request: Request) -> list[tuple[str, str]]:
    if media_type(request.headers.get("content-type")) != CONTENT_TYPE_FORM:
        return []
    body = await request.body()
    return urllib.parse.parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)


def validate_token_request(request: Request, pairs: list[tuple[str, str]], options) -> TokenRequestMeta:
    if media_type(request.headers.get("content-type")) != CONTENT_TYPE_FORM:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_content_type"],
            f"Token requests must use {CONTENT_TYPE_FORM}",
        )

    grant_type = next((v for k, v in pairs if k == GRANT_TYPE and v), None)
    if grant_type is None:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["missing_mandatory_parameter"],
            GRANT_TYPE,
        )

    grant_def = TOKEN_REQUEST_GRANTS.get(grant_type)
    if grant_def is None:
        raise OIDCError(
            ErrorCode.UNSUPPORTED_GRANT_TYPE,
            ERROR_DESCRIPTIONS["unsupported_grant_type"],
            f"Possible values: {', '.join(TOKEN_REQUEST_GRANTS)}",
        )

    present = {k for k, v in pairs if v}
    for name in grant_def["mandatory"]:
        if name not in present:
            raise OIDCError(
                ErrorCode.INVALID_REQUEST,
                ERROR_DESCRIPTIONS["missing_mandatory_parameter"],
                name,
            )

    url = parse_url(str(request.url))
    require_tls(url, options.development)
    require_method(request.method, ("POST",))
    reject_fragment(url)

    allowed = grant_def["mandatory"] + grant_def["optional"]
    params = sanitize_params(pairs, allowed)
    reject_duplicate_params([(k, v) for k, v in pairs if k in allowed])

    scope = params.get(SCOPE)
    return TokenRequestMeta(
        grant_type=grant_def["type"],
        client_id=params.get(CLIENT_ID),
        client_secret=params.get(CLIENT_SECRET),
        redirect_uri=params.get(REDIRECT_URI),
        code=params.get(CODE),
        code_verifier=params.get(CODE_VERIFIER),
        scope=scope,
        scope_set=scope_set(scope) if scope else None,
    )


async def handle_token_request(request: Request, options) -> Response:
    client = None
    try:
        pairs = await _read_form(request)
        authenticated = await authenticate_client(request.headers, dict(pairs), options)
        meta = validate_token_request(request, pairs, options)
        client = await validate_token_client(authenticated.client, meta, options)

        if meta.grant_type != GRANT_AUTHORIZATION_CODE:
            raise OIDCError(
                ErrorCode.UNSUPPORTED_GRANT_TYPE,
                ERROR_DESCRIPTIONS["unsupported_grant_type"],
                f"{meta.grant_type} is not issued by this server",
            )

        grant = await options.database.fetch("grant", meta.code)
        validate_grant(grant, client, meta)

        # Sign first: a request cancelled before consumption leaves the code redeemable.
        access_token, token_type = generate_access_token(grant, client, options)
        body = {
            "access_token": access_token,
            "token_type": token_type,
            "expires_in": TOKEN_EXPIRY_SECONDS,
        }
        if SCOPE_OPENID in scope_set(grant.scope):
            body["id_token"] = await generate_id_token(grant, client, options)

        await consume_grant(grant, options)
        _audit(options, "token_issued", client_id=client.client_id, grant_id=grant.id,
               id_token="id_token" in body)
        return JSONResponse(body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})
    except OIDCError as exc:
        error = exc
    except Exception:
        logger.exception("unhandled error at the token endpoint")
        _audit(options, "server_error", client_id=client.client_id if client else None)
        error = server_error("Unhandled error at the token endpoint")

    auth_method = client.token_endpoint_auth_method if client else None
    return token_error_response(ErrorDTO.from_error(error, options.development), auth_method)
