"""
grants.py — authorization code issuance and redemption.

A grant binds a code to the client, the redirect_uri, the granted scope,
the PKCE challenge and the resource owner's claims. Codes expire after
``authorization_code_ttl`` seconds and are redeemable exactly once.
"""

import base64
import hashlib
import hmac
import secrets
import time
import uuid

from authnz.audit import _audit
from authnz.errors import ERROR_DESCRIPTIONS, ErrorCode, OIDCError
from authnz.models import AuthorizationRequestMeta, Claims, Grant, OAuthClient, TokenRequestMeta
from authnz.validation import scope_set


def _invalid_grant(hint: str) -> OIDCError:
    return OIDCError(ErrorCode.INVALID_GRANT, ERROR_DESCRIPTIONS["invalid_grant"], hint)


async def create_authorization_grant(meta: AuthorizationRequestMeta, claims: Claims, options) -> Grant:
    grant = Grant(
        id=str(uuid.uuid4()),
        code=secrets.token_hex(32),
        client_id=meta.client_id,
        redirect_uri=meta.redirect_uri,
        claims=claims,
        expires_at=time.time() + options.authorization_code_ttl,
        scope=" ".join(sorted(meta.scope_set)),
        code_challenge=meta.code_challenge,
        code_challenge_method=meta.code_challenge_method,
        nonce=meta.nonce,
    )
    await options.database.insert("grant", grant, grant.code)
    _audit(options, "grant_issued", client_id=grant.client_id, grant_id=grant.id, scope=grant.scope)
    return grant


def verify_pkce(verifier: str, challenge: str, method: str | None) -> bool:
    method = (method or "plain").lower()
    if method in ("s256", "sha256"):
        computed = hashlib.sha256(verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(computed).rstrip(b"=").decode("ascii")
        return hmac.compare_digest(expected, challenge)
    if method == "plain":
        return hmac.compare_digest(verifier, challenge)
    return False


def validate_grant(grant: Grant | None, client: OAuthClient, meta: TokenRequestMeta,
                   now: float | None = None) -> None:
    if grant is None:
        raise _invalid_grant("non-existing, revoked or expired grant")

    if grant.used:
        raise _invalid_grant("the grant has already been redeemed")

    if grant.is_expired(now):
        raise _invalid_grant("the grant has expired")

    if grant.client_id != client.client_id:
        raise _invalid_grant("the grant was issued for another client")

    if grant.redirect_uri != meta.redirect_uri:
        raise _invalid_grant("redirect_uri mismatch")

    if meta.scope and meta.scope_set is not None:
        granted = scope_set(grant.scope)
        if not meta.scope_set <= granted:
            raise OIDCError(
                ErrorCode.INVALID_SCOPE,
                ERROR_DESCRIPTIONS["scope_error"],
                f"Requested scopes exceed the scopes the resource owner granted: ({grant.scope})",
            )

    if grant.code_challenge:
        if not meta.code_verifier:
            raise OIDCError(
                ErrorCode.INVALID_REQUEST,
                ERROR_DESCRIPTIONS["missing_code_verifier"],
                "The grant was issued with a code_challenge",
            )
        if not verify_pkce(meta.code_verifier, grant.code_challenge, grant.code_challenge_method):
            raise _invalid_grant("PKCE verification failed")


async def consume_grant(grant: Grant, options) -> None:
    """Mark the grant used; only one concurrent redemption can win."""
    won = await options.database.update("grant", grant.code, {"used": True}, expect={"used": False})
    if not won:
        _audit(options, "grant_rejected", client_id=grant.client_id, grant_id=grant.id,
               reason="already_redeemed")
        raise _invalid_grant("the grant has already been redeemed")
