"""Embeddable OAuth 2.0 / OpenID Connect authorization server."""

from authnz.claims import filter_claims_by_scope
from authnz.config import OIDCOptions, default_show_consent
from authnz.errors import ErrorCode, OIDCError
from authnz.models import FlowState, OAuthClient
from authnz.service import AuthNZService, create_service
from authnz.store import InMemoryStore, Store

__all__ = [
    "AuthNZService",
    "ErrorCode",
    "FlowState",
    "InMemoryStore",
    "OAuthClient",
    "OIDCError",
    "OIDCOptions",
    "Store",
    "create_service",
    "default_show_consent",
    "filter_claims_by_scope",
]
