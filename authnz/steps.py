"""
steps.py — resume a suspended authorization flow.

The browser comes back from the host's sign-in or consent page to
``{mount}/step/{uid}/login`` or ``{mount}/step/{uid}/decision`` carrying
the matching step cookie.
"""

import json
import time
import urllib.parse

from starlette.requests import Request
from starlette.responses import Response

from authnz.audit import _audit
from authnz.authorize import (
    consent_or_grant,
    flow_error_response,
    issue_grant,
    step_cookie_name,
    transition,
)
from authnz.constants import (
    CONTENT_TYPE_FORM,
    CONTENT_TYPE_JSON,
    DECISION_GRANT,
    STEP_CONSENT,
    STEP_COOKIE_MAX_AGE,
    STEP_LOGIN,
)
from authnz.errors import ERROR_DESCRIPTIONS, ErrorCode, OIDCError
from authnz.hooks import call_hook
from authnz.models import AuthorizationRequestMeta, FlowState
from authnz.validation import media_type


def _unknown_session(hint: str) -> OIDCError:
    return OIDCError(ErrorCode.INVALID_REQUEST, ERROR_DESCRIPTIONS["unknown_session"], hint, flagged=True)


async def _load_session(request: Request, step: str, expected: FlowState, options) -> AuthorizationRequestMeta:
    uid = request.cookies.get(step_cookie_name(step))
    if not uid:
        raise _unknown_session("missing step cookie")

    # /step/{uid}/{step}: the path uid, when present, must match the cookie
    parts = request.url.path.rstrip("/").split("/")
    if len(parts) >= 3 and parts[-3] == "step" and parts[-2] != uid:
        raise _unknown_session("step cookie does not match the step url")

    meta = await options.database.fetch("session", uid)
    if meta is None:
        raise _unknown_session("no session for this step cookie")
    if time.time() - meta.updated_at > STEP_COOKIE_MAX_AGE:
        raise _unknown_session("the authorization session has expired")
    if meta.status != expected:
        raise OIDCError(
            ErrorCode.INVALID_REQUEST,
            ERROR_DESCRIPTIONS["invalid_step"],
            f"session is {meta.status.value}, expected {expected.value}",
            flagged=True,
        )
    return meta


async def resolve_login_step(request: Request, options) -> Response:
    meta = None
    try:
        meta = await _load_session(request, STEP_LOGIN, FlowState.PENDING_LOGIN, options)

        # The sign-in page establishes the subject out of band.
        claims = await call_hook(options.get_user, request, meta.scope_set)
        if not claims or not claims.get("sub"):
            return Response(status_code=401)

        login = meta.step(STEP_LOGIN)
        login.active = False
        login.completed = True
        meta.claims = claims
        await options.database.update("session", meta.uid, {"steps": meta.steps, "claims": claims})

        return await consent_or_grant(meta, claims, FlowState.PENDING_LOGIN, options)
    except Exception as exc:
        return flow_error_response(exc, options, meta)


async def _read_decision(request: Request):
    content_type = media_type(request.headers.get("content-type"))
    if content_type == CONTENT_TYPE_JSON:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body.get("decision") if isinstance(body, dict) else None
    if content_type == CONTENT_TYPE_FORM:
        body = (await request.body()).decode("utf-8", errors="replace")
        return dict(urllib.parse.parse_qsl(body)).get("decision")
    return None


def _is_grant(decision) -> bool:
    if isinstance(decision, bool):
        return False
    return decision in (DECISION_GRANT, "1") or (isinstance(decision, int) and decision == 1)


async def resolve_consent_step(request: Request, options) -> Response:
    meta = None
    try:
        meta = await _load_session(request, STEP_CONSENT, FlowState.PENDING_CONSENT, options)
        consent = meta.step(STEP_CONSENT)
        decision = await _read_decision(request)

        if not _is_grant(decision):
            await transition(meta, FlowState.PENDING_CONSENT, FlowState.ERROR, options)
            consent.active = False
            await options.database.update("session", meta.uid, {"steps": meta.steps})
            _audit(options, "consent_denied", client_id=meta.client_id, uid=meta.uid)
            raise OIDCError(
                ErrorCode.ACCESS_DENIED,
                ERROR_DESCRIPTIONS["denied_authorization_request"],
                "the resource owner denied the grant",
            )

        response = await issue_grant(meta, meta.claims, FlowState.PENDING_CONSENT, options)
        consent.active = False
        consent.completed = True
        await options.database.update("session", meta.uid, {"steps": meta.steps})
        return response
    except Exception as exc:
        return flow_error_response(exc, options, meta)
