"""
authorize.py — the authorization endpoint.

A valid request either issues a code right away or suspends for login
and/or consent. Suspension persists the request under a random uid and
hands the browser a short-lived cookie carrying that uid; the step
resolvers (steps.py) pick the flow up from there.

  VALIDATING ─┬─ client/request error → error page or redirect_uri
              ├─ no subject           → PENDING_LOGIN   (302 sign-in)
              ├─ consent needed       → PENDING_CONSENT (302 consent)
              └─ otherwise            → GRANTED         (302 redirect_uri?code=)
"""

import logging
import secrets
import time
import urllib.parse

from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from authnz.audit import _audit
from authnz.constants import (
    AUTHORIZATION_REQUEST_GRANTS,
    CLAIMS,
    CLIENT_ID,
    CODE_CHALLENGE,
    CODE_CHALLENGE_METHOD,
    CODE_CHALLENGE_METHODS,
    CONTENT_TYPE_FORM,
    NONCE,
    PROMPT,
    REDIRECT_URI,
    REQUEST,
    REQUEST_URI,
    RESOURCE,
    RESPONSE_TYPE,
    SCOPE,
    STATE,
    STEP_CONSENT,
    STEP_COOKIE_MAX_AGE,
    STEP_COOKIE_PREFIX,
    STEP_LOGIN,
    STEP_PATHS,
)
from authnz.clients import find_client, validate_client
from authnz.errors import (
    ERROR_DESCRIPTIONS,
    ErrorCode,
    ErrorDTO,
    OIDCError,
    construct_redirect_uri,
    handle_error,
    server_error,
)
from authnz.grants import create_authorization_grant
from authnz.hooks import call_hook
from authnz.models import AuthorizationRequestMeta, Claims, FlowState
from authnz.validation import (
    media_type,
    parse_url,
    reject_duplicate_params,
    reject_fragment,
    require_client_id,
    require_method,
    require_redirect_uri,
    require_response_type,
    require_tls,
    sanitize_params,
    scope_set,
    validate_param_value,
    validate_scope_subset,
)

logger = logging.getLogger("authnz")


async def _read_params(request: Request, url: urllib.parse.SplitResult) -> list[tuple[str, str]]:
    """Query string for GET, form body for POST."""
    if request.method.upper() == "GET":
        return urllib.parse.parse_qsl(url.query, keep_blank_values=True)
    if media_type(request.headers.get("content-type")) != CONTENT_TYPE_FORM:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_content_type"],
            f"POST authorization requests must use {CONTENT_TYPE_FORM}",
        )
    body = await request.body()
    return urllib.parse.parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)


async def validate_authorize_request(request: Request, options) -> AuthorizationRequestMeta:
    state = None
    trusted_redirect_uri = None
    try:
        url = parse_url(str(request.url))
        require_method(request.method, ("GET", "POST"))
        raw = await _read_params(request, url)

        grant_def = AUTHORIZATION_REQUEST_GRANTS["code"]
        params = sanitize_params(raw, grant_def["mandatory"] + grant_def["optional"])
        params = {k: v.strip() for k, v in params.items()}
        state = params.get(STATE)

        reject_duplicate_params(raw)
        reject_fragment(url)
        require_tls(url, options.development)

        response_type = params.get(RESPONSE_TYPE)
        client_id = params.get(CLIENT_ID)
        redirect_uri = params.get(REDIRECT_URI)
        require_response_type(response_type)
        require_client_id(client_id)
        require_redirect_uri(redirect_uri)

        grant_def = AUTHORIZATION_REQUEST_GRANTS[response_type]
        client = await find_client(client_id, options)
        validate_client(client, client_id, redirect_uri, grant_def["type"])
        trusted_redirect_uri = redirect_uri

        for name in grant_def["mandatory"]:
            if name not in params:
                raise OIDCError(
                    ErrorCode.INVALID_REQUEST,
                    ERROR_DESCRIPTIONS["missing_mandatory_parameter"],
                    name,
                )

        method = params.get(CODE_CHALLENGE_METHOD)
        if method is not None:
            method = method.lower()
            validate_param_value(method, CODE_CHALLENGE_METHODS,
                                 ERROR_DESCRIPTIONS["invalid_code_challenge_method"])

        allowed = scope_set(client.scope or options.default_scope)
        if params.get(SCOPE):
            granted_scopes = validate_scope_subset(scope_set(params[SCOPE]), allowed)
        else:
            granted_scopes = allowed

        return AuthorizationRequestMeta(
            uid=secrets.token_hex(16),
            client=client,
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            original_uri=str(request.url),
            scope=params.get(SCOPE),
            scope_set=granted_scopes,
            state=state,
            nonce=params.get(NONCE),
            prompt=params.get(PROMPT),
            claims_request=params.get(CLAIMS),
            resource=params.get(RESOURCE),
            request=params.get(REQUEST),
            request_uri=params.get(REQUEST_URI),
            code_challenge=params.get(CODE_CHALLENGE),
            code_challenge_method=method,
        )
    except OIDCError as error:
        if state and not error.state:
            error.state = state
        if trusted_redirect_uri and not error.redirect_uri:
            error.redirect_uri = trusted_redirect_uri
        raise
    except Exception:
        logger.exception("unhandled error while validating an authorization request")
        error = server_error("Unhandled error during authorization request validation")
        error.state = state
        error.redirect_uri = trusted_redirect_uri
        raise error from None


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------

def step_cookie_name(step: str) -> str:
    return f"{STEP_COOKIE_PREFIX}{step}"


def redirect_to_step(meta: AuthorizationRequestMeta, step: str, options) -> RedirectResponse:
    """Send the browser to sign-in or consent, correlated by a step cookie."""
    step_url = options.step_url(meta.uid, STEP_PATHS[step])
    page = options.sign_in_url if step == STEP_LOGIN else options.consent_url
    response = RedirectResponse(construct_redirect_uri(page, redirectTo=step_url), status_code=302)
    response.set_cookie(
        step_cookie_name(step),
        meta.uid,
        max_age=STEP_COOKIE_MAX_AGE,
        path=urllib.parse.urlsplit(step_url).path,
        secure=not options.development,
        httponly=True,
        samesite="lax",
    )
    return response


def redirect_to_callback(meta: AuthorizationRequestMeta, code: str) -> RedirectResponse:
    location = construct_redirect_uri(meta.redirect_uri, code=code, state=meta.state)
    return RedirectResponse(location, status_code=302)


async def transition(meta: AuthorizationRequestMeta, current: FlowState, target: FlowState, options) -> None:
    """Move the session from ``current`` to ``target``; only one racer wins."""
    now = time.time()
    won = await options.database.update("session", meta.uid, {"status": target, "updated_at": now},
                                        expect={"status": current})
    if not won:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_step"],
            f"session left {current.value} concurrently",
            flagged=True,
        )
    meta.status = target
    meta.updated_at = now


async def issue_grant(meta: AuthorizationRequestMeta, claims: Claims, current: FlowState,
                      options) -> RedirectResponse:
    await transition(meta, current, FlowState.GRANTED, options)
    try:
        grant = await create_authorization_grant(meta, claims, options)
    except BaseException:
        # no code was stored: hand the session back so the step can be retried
        await options.database.update("session", meta.uid, {"status": current},
                                      expect={"status": FlowState.GRANTED})
        meta.status = current
        raise
    return redirect_to_callback(meta, grant.code)


async def consent_or_grant(meta: AuthorizationRequestMeta, claims: Claims, current: FlowState,
                           options) -> RedirectResponse:
    """Continue a flow once the resource owner is known."""
    if await call_hook(options.show_consent, meta, claims):
        await transition(meta, current, FlowState.PENDING_CONSENT, options)
        meta.step(STEP_CONSENT).active = True
        await options.database.update("session", meta.uid, {"steps": meta.steps})
        _audit(options, "authorize_pending_consent", client_id=meta.client_id, uid=meta.uid)
        return redirect_to_step(meta, STEP_CONSENT, options)
    return await issue_grant(meta, claims, current, options)


def flow_error_response(exc: Exception, options, meta: AuthorizationRequestMeta | None = None) -> Response:
    """Turn any failure in the browser flow into a redirect."""
    if isinstance(exc, OIDCError):
        error = exc
    else:
        logger.error("unhandled error in authorization flow", exc_info=exc)
        _audit(options, "server_error", uid=meta.uid if meta else None)
        error = server_error("Unhandled error during the authorization flow")
    if meta is not None and not error.flagged:
        # meta only exists after client validation, so its redirect_uri is trusted
        error.state = error.state or meta.state
        error.redirect_uri = error.redirect_uri or meta.redirect_uri
    return handle_error(ErrorDTO.from_error(error, options.development), options)


async def handle_authorize_request(request: Request, options) -> Response:
    meta = None
    try:
        meta = await validate_authorize_request(request, options)
        await options.database.insert("session", meta, meta.uid)

        claims = await call_hook(options.get_user, request, meta.scope_set)
        if not claims or not claims.get("sub"):
            await transition(meta, FlowState.VALIDATING, FlowState.PENDING_LOGIN, options)
            meta.step(STEP_LOGIN).active = True
            await options.database.update("session", meta.uid, {"steps": meta.steps})
            _audit(options, "authorize_pending_login", client_id=meta.client_id, uid=meta.uid)
            return redirect_to_step(meta, STEP_LOGIN, options)

        meta.step(STEP_LOGIN).completed = True
        meta.claims = claims
        await options.database.update("session", meta.uid, {"steps": meta.steps, "claims": claims})
        return await consent_or_grant(meta, claims, FlowState.VALIDATING, options)
    except Exception as exc:
        return flow_error_response(exc, options, meta)
