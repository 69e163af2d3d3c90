"""
tokens.py — HS256 access and ID tokens.
"""

import secrets
import time

import jwt

from authnz.claims import get_claims
from authnz.constants import ID_TOKEN, JWT_ALGORITHM, TOKEN_EXPIRY_SECONDS, TOKEN_TYPE
from authnz.models import Grant, OAuthClient


def generate_access_token(grant: Grant, client: OAuthClient, options) -> tuple[str, str]:
    now = int(time.time())
    payload = {
        "sub": grant.claims["sub"],
        "iss": options.issuer,
        "aud": client.client_id,
        "iat": now,
        "exp": now + TOKEN_EXPIRY_SECONDS,
        "jti": secrets.token_hex(16),
        "client_id": client.client_id,
        "scope": grant.scope,
    }
    return jwt.encode(payload, options.signing_key, algorithm=JWT_ALGORITHM), TOKEN_TYPE


async def generate_id_token(grant: Grant, client: OAuthClient, options) -> str:
    claims = await get_claims(ID_TOKEN, grant, options)
    claims.pop("sub", None)
    now = int(time.time())
    payload = {
        **claims,
        "sub": grant.claims["sub"],
        "iss": options.issuer,
        "aud": client.client_id,
        "iat": now,
        "exp": now + TOKEN_EXPIRY_SECONDS,
    }
    if grant.nonce:
        payload["nonce"] = grant.nonce
    return jwt.encode(payload, options.signing_key, algorithm=JWT_ALGORITHM)
