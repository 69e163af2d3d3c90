"""
constants.py — OAuth 2.0 / OpenID Connect vocabulary used across authnz.

Parameter names, scopes, standard claims and the per-grant parameter tables
that drive request validation.
"""

# ---------------------------------------------------------------------------
# Request parameters
# ---------------------------------------------------------------------------

# oauth
RESPONSE_TYPE = "response_type"
GRANT_TYPE = "grant_type"
CLIENT_ID = "client_id"
CLIENT_SECRET = "client_secret"
REDIRECT_URI = "redirect_uri"
CODE = "code"
SCOPE = "scope"
STATE = "state"
# oidc
NONCE = "nonce"
PROMPT = "prompt"
CLAIMS = "claims"
REQUEST = "request"
REQUEST_URI = "request_uri"
# pkce
CODE_VERIFIER = "code_verifier"
CODE_CHALLENGE = "code_challenge"
CODE_CHALLENGE_METHOD = "code_challenge_method"
# resource indicators
RESOURCE = "resource"

# Duplicates of these must never yield a redirect to a client supplied URI.
SENSITIVE_PARAMS = frozenset({CLIENT_ID, REDIRECT_URI})

# ---------------------------------------------------------------------------
# Scopes and claims
# ---------------------------------------------------------------------------

SCOPE_OPENID = "openid"
SCOPE_EMAIL = "email"
SCOPE_PROFILE = "profile"
SCOPE_ADDRESS = "address"
SCOPE_PHONE = "phone"
SCOPE_OFFLINE_ACCESS = "offline_access"

INTERNAL_SCOPES = frozenset({SCOPE_OPENID, SCOPE_OFFLINE_ACCESS})

SCOPE_CLAIMS_MAP: dict[str, tuple[str, ...]] = {
    SCOPE_PROFILE: (
        "name", "family_name", "given_name", "middle_name", "nickname",
        "preferred_username", "profile", "picture", "website", "gender",
        "birthdate", "zoneinfo", "locale", "updated_at",
    ),
    SCOPE_EMAIL: ("email", "email_verified"),
    SCOPE_ADDRESS: ("address",),
    SCOPE_PHONE: ("phone_number", "phone_number_verified"),
}

ID_TOKEN = "id_token"
USERINFO = "userinfo"

# ---------------------------------------------------------------------------
# Literals
# ---------------------------------------------------------------------------

AUTH_METHOD_NONE = "none"
AUTH_METHOD_SECRET_POST = "client_secret_post"
AUTH_METHOD_SECRET_BASIC = "client_secret_basic"

CLIENT_TYPE_PUBLIC = "public"
CLIENT_TYPE_CONFIDENTIAL = "confidential"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"

RESPONSE_TYPE_CODE = "code"

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_CLIENT_CREDENTIALS = "client_credentials"

CODE_CHALLENGE_METHODS = ("s256", "sha256", "plain")

DECISION_GRANT = "grant"
DECISION_DECLINE = "decline"

JWT_ALGORITHM = "HS256"
TOKEN_TYPE = "jwt"
TOKEN_EXPIRY_SECONDS = 7200  # 2 hours

STEP_LOGIN = "login"
STEP_CONSENT = "consent"
STEP_COOKIE_PREFIX = "authnz:step:"
STEP_COOKIE_MAX_AGE = 1200  # 20 minutes
# last path segment of each step's resume url
STEP_PATHS = {STEP_LOGIN: "login", STEP_CONSENT: "decision"}

# ---------------------------------------------------------------------------
# Grant parameter tables
# ---------------------------------------------------------------------------

AUTHORIZATION_REQUEST_GRANTS = {
    RESPONSE_TYPE_CODE: {
        "type": GRANT_AUTHORIZATION_CODE,
        "mandatory": (RESPONSE_TYPE, CLIENT_ID, REDIRECT_URI),
        "optional": (
            SCOPE, STATE, NONCE, CODE_CHALLENGE, CODE_CHALLENGE_METHOD,
            CLAIMS, PROMPT, RESOURCE, REQUEST, REQUEST_URI,
        ),
    },
}

TOKEN_REQUEST_GRANTS = {
    GRANT_AUTHORIZATION_CODE: {
        "type": GRANT_AUTHORIZATION_CODE,
        "mandatory": (GRANT_TYPE, CODE, REDIRECT_URI),
        "optional": (CLIENT_ID, CLIENT_SECRET, CODE_VERIFIER, SCOPE),
    },
    GRANT_CLIENT_CREDENTIALS: {
        "type": GRANT_CLIENT_CREDENTIALS,
        "mandatory": (GRANT_TYPE,),
        "optional": (SCOPE,),
    },
}
