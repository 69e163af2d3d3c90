"""OpenID Connect discovery document."""

from typing import Any

from authnz.constants import (
    AUTH_METHOD_SECRET_BASIC,
    AUTH_METHOD_SECRET_POST,
    GRANT_AUTHORIZATION_CODE,
    JWT_ALGORITHM,
    RESPONSE_TYPE_CODE,
)
from authnz.validation import scope_set


def get_metadata(options) -> dict[str, Any]:
    return {
        "issuer": options.issuer,
        "authorization_endpoint": options.endpoint("authorize"),
        "token_endpoint": options.endpoint("token"),
        "scopes_supported": sorted(scope_set(options.default_scope)),
        "response_types_supported": [RESPONSE_TYPE_CODE],
        "response_modes_supported": ["query"],
        "grant_types_supported": [GRANT_AUTHORIZATION_CODE],
        "token_endpoint_auth_methods_supported": [AUTH_METHOD_SECRET_BASIC, AUTH_METHOD_SECRET_POST],
        "code_challenge_methods_supported": ["S256", "plain"],
        "id_token_signing_alg_values_supported": [JWT_ALGORITHM],
        "subject_types_supported": ["public"],
    }
