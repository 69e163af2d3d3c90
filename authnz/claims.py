"""
claims.py — resolve the claims placed in issued tokens.
"""

from authnz.constants import INTERNAL_SCOPES, SCOPE_CLAIMS_MAP
from authnz.errors import ERROR_DESCRIPTIONS, ErrorCode, OIDCError
from authnz.hooks import call_hook
from authnz.models import Claims, Grant
from authnz.validation import scope_set


async def get_claims(target: str, grant: Grant, options) -> Claims:
    """Claims for ``target`` (id_token or userinfo).

    With a ``get_claims`` hook the grant's claims are filtered by it, using
    the granted scopes minus openid/offline_access. Without one, the grant's
    claims are returned as they are.
    """
    if not grant.claims or not grant.claims.get("sub"):
        raise OIDCError(
            ErrorCode.SERVER_ERROR,
            ERROR_DESCRIPTIONS["unable_to_provide_claims"],
            "the grant carries no subject",
        )

    if options.get_claims is None:
        return dict(grant.claims)

    requested = scope_set(grant.scope) - INTERNAL_SCOPES
    return await call_hook(options.get_claims, target, dict(grant.claims), requested)


def filter_claims_by_scope(target: str, claims: Claims, scopes: set[str]) -> Claims:
    """Standard OIDC scope→claims filter, usable as the ``get_claims`` hook."""
    allowed = {"sub"}
    for scope in scopes:
        allowed.update(SCOPE_CLAIMS_MAP.get(scope, ()))
    return {k: v for k, v in claims.items() if k in allowed}
