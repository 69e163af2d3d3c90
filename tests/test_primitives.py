"""Tests for the building blocks: errors, options, store, hooks, claims, grants, tokens."""
import asyncio
import base64
import hashlib
import json
import logging
import time
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest

from conftest import BASE, CALLBACK, location_params

from authnz import InMemoryStore, OAuthClient, OIDCOptions, filter_claims_by_scope
from authnz.audit import _audit
from authnz.authorize import handle_authorize_request
from authnz.claims import get_claims
from authnz.config import default_show_consent
from authnz.errors import (
    ErrorCode,
    ErrorDTO,
    OIDCError,
    construct_redirect_uri,
    handle_error,
    server_error,
    token_error_response,
)
from authnz.grants import consume_grant, validate_grant, verify_pkce
from authnz.hooks import call_hook
from authnz.models import AuthorizationRequestMeta, Grant, TokenRequestMeta
from authnz.tokens import generate_access_token, generate_id_token


def _grant(**overrides) -> Grant:
    values = dict(
        id="grant-1",
        code="c0de",
        client_id="foo",
        redirect_uri=CALLBACK,
        claims={"sub": "user-1", "email": "user@example.com", "name": "User One"},
        expires_at=time.time() + 120,
        scope="email openid",
    )
    values.update(overrides)
    return Grant(**values)


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


# ---------------------------------------------------------------------------
# Errors and dispatch
# ---------------------------------------------------------------------------

class TestErrorDTO:
    def test_hint_hidden_outside_development(self):
        error = OIDCError(ErrorCode.INVALID_REQUEST, "missing response_type", "debug detail", state="s1")
        dto = ErrorDTO.from_error(error, development=False)
        assert dto.to_params() == {
            "error": "invalid_request",
            "error_description": "missing response_type",
            "state": "s1",
        }

    def test_hint_shown_in_development(self):
        error = OIDCError(ErrorCode.INVALID_REQUEST, "missing response_type", "debug detail")
        assert ErrorDTO.from_error(error, development=True).error_hint == "debug detail"

    def test_server_error_keeps_generic_description(self):
        error = server_error("boom")
        assert error.kind is ErrorCode.SERVER_ERROR
        assert "boom" not in error.description


class TestHandleError:
    def test_flagged_goes_to_error_page(self, options):
        error = OIDCError(ErrorCode.INVALID_REQUEST, "duplicate query parameter", flagged=True,
                          redirect_uri="https://attacker.example/cb")
        response = handle_error(ErrorDTO.from_error(error), options)
        url, params = location_params(response)
        assert response.status_code == 302
        assert url == options.error_url
        assert params["error"] == "invalid_request"

    def test_without_redirect_uri_goes_to_error_page(self, options):
        error = OIDCError(ErrorCode.UNAUTHORIZED_CLIENT, "unregistered client")
        url, _ = location_params(handle_error(ErrorDTO.from_error(error), options))
        assert url == options.error_url

    def test_validated_redirect_uri_receives_error(self, options):
        error = OIDCError(ErrorCode.ACCESS_DENIED, "denied", state="xyz", redirect_uri=CALLBACK)
        url, params = location_params(handle_error(ErrorDTO.from_error(error), options))
        assert url == CALLBACK
        assert params == {"error": "access_denied", "error_description": "denied", "state": "xyz"}

    def test_construct_redirect_uri_keeps_existing_query(self):
        uri = construct_redirect_uri("https://cb.example/x?tenant=a", code="123", state=None)
        assert uri == "https://cb.example/x?tenant=a&code=123"


class TestTokenErrorResponse:
    def test_bad_request(self):
        response = token_error_response(ErrorDTO("invalid_grant", "invalid grant"))
        assert response.status_code == 400
        assert response.headers["cache-control"] == "no-store"
        assert json.loads(response.body) == {"error": "invalid_grant", "error_description": "invalid grant"}

    def test_invalid_client_is_401_with_challenge(self):
        response = token_error_response(ErrorDTO("invalid_client"), "client_secret_post")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "client_secret_post"

    def test_invalid_client_defaults_to_basic(self):
        response = token_error_response(ErrorDTO("invalid_client"))
        assert response.headers["www-authenticate"] == "client_secret_basic"


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class TestOptions:
    def test_urls_default_from_base(self, registered_client):
        options = OIDCOptions(base=BASE + "/", get_user=lambda r, s: None, clients=[registered_client])
        assert options.base == BASE
        assert options.issuer == BASE
        assert options.sign_in_url == f"{BASE}/auth/sign-in"
        assert options.consent_url == f"{BASE}/auth/oidc/consent"
        assert options.error_url == f"{BASE}/auth/oidc/error"
        assert options.endpoint("token") == f"{BASE}/api/oidc/token"
        assert options.step_url("abc", "login") == f"{BASE}/api/oidc/step/abc/login"

    def test_random_signing_key(self, registered_client):
        a = OIDCOptions(base=BASE, get_user=lambda r, s: None, clients=[registered_client])
        b = OIDCOptions(base=BASE, get_user=lambda r, s: None, clients=[registered_client])
        assert len(a.signing_key) == 64
        assert a.signing_key != b.signing_key

    def test_invalid_base_rejected(self, registered_client):
        with pytest.raises(ValueError, match="base"):
            OIDCOptions(base="not-a-url", get_user=lambda r, s: None, clients=[registered_client])

    def test_requires_a_client_source(self):
        with pytest.raises(ValueError, match="get_client"):
            OIDCOptions(base=BASE, get_user=lambda r, s: None)

    def test_duplicate_client_ids_rejected(self, registered_client):
        with pytest.raises(ValueError, match="Duplicate"):
            OIDCOptions(base=BASE, get_user=lambda r, s: None,
                        clients=[registered_client, registered_client])

    def test_development_from_env(self, registered_client, monkeypatch):
        monkeypatch.setenv("AUTHNZ_ENV", "development")
        options = OIDCOptions(base=BASE, get_user=lambda r, s: None, clients=[registered_client])
        assert options.development is True

    def test_client_requires_redirect_uris(self):
        with pytest.raises(ValueError):
            OAuthClient(client_id="x", redirect_uris=[])


class TestDefaultShowConsent:
    def _meta(self, client, scopes):
        return AuthorizationRequestMeta(
            uid="u", client=client, response_type="code", client_id=client.client_id,
            redirect_uri=CALLBACK, original_uri="", scope_set=set(scopes),
        )

    def test_trusted_client_skips(self, registered_client):
        trusted = OAuthClient(client_id="t", redirect_uris=[CALLBACK], trusted=True)
        assert default_show_consent(self._meta(trusted, {"email"})) is False

    def test_openid_only_skips(self, registered_client):
        assert default_show_consent(self._meta(registered_client, {"openid"})) is False

    def test_other_scopes_ask(self, registered_client):
        assert default_show_consent(self._meta(registered_client, {"openid", "email"})) is True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_insert_derives_key(self):
        store = InMemoryStore()
        grant = _grant()
        await store.insert("grant", grant)
        assert await store.fetch("grant", "c0de") is grant

    @pytest.mark.asyncio
    async def test_fetch_missing(self):
        assert await InMemoryStore().fetch("session", "nope") is None

    @pytest.mark.asyncio
    async def test_unknown_table(self):
        with pytest.raises(ValueError):
            await InMemoryStore().insert("tokens", {"uid": "x"})

    @pytest.mark.asyncio
    async def test_update_dict_record(self):
        store = InMemoryStore()
        await store.insert("session", {"uid": "s1", "status": "a"})
        assert await store.update("session", "s1", {"status": "b"}) is True
        assert (await store.fetch("session", "s1"))["status"] == "b"

    @pytest.mark.asyncio
    async def test_update_missing_record(self):
        assert await InMemoryStore().update("grant", "nope", {"used": True}) is False

    @pytest.mark.asyncio
    async def test_conditional_update(self):
        store = InMemoryStore()
        await store.insert("grant", _grant())
        assert await store.update("grant", "c0de", {"used": True}, expect={"used": False}) is True
        assert await store.update("grant", "c0de", {"used": True}, expect={"used": False}) is False

    @pytest.mark.asyncio
    async def test_insert_prunes_finished_rows(self, registered_client):
        store = InMemoryStore()
        await store.insert("grant", _grant(code="used", used=True))
        await store.insert("grant", _grant(code="expired", expires_at=time.time() - 1))
        await store.insert("grant", _grant(code="live"))

        idle = AuthorizationRequestMeta(uid="idle", client=registered_client, response_type="code",
                                        client_id="foo", redirect_uri=CALLBACK, original_uri="")
        idle.updated_at = time.time() - 1201
        await store.insert("session", idle)
        fresh = AuthorizationRequestMeta(uid="fresh", client=registered_client, response_type="code",
                                         client_id="foo", redirect_uri=CALLBACK, original_uri="")
        await store.insert("session", fresh)

        assert set(store._tables["grant"]) == {"live"}
        assert set(store._tables["session"]) == {"fresh"}

    @pytest.mark.asyncio
    async def test_anonymous_sessions_do_not_accumulate(self, options, make_request):
        options.get_user = lambda request, scopes: None
        query = {"response_type": "code", "client_id": "foo", "redirect_uri": CALLBACK}
        for _ in range(20):
            await handle_authorize_request(make_request(query=query), options)
        for meta in options.database._tables["session"].values():
            meta.updated_at -= 10_000
        await handle_authorize_request(make_request(query=query), options)
        assert len(options.database._tables["session"]) == 1


# ---------------------------------------------------------------------------
# Hooks and audit
# ---------------------------------------------------------------------------

class TestHooks:
    @pytest.mark.asyncio
    async def test_sync_hook(self):
        assert await call_hook(lambda x: x + 1, 1) == 2

    @pytest.mark.asyncio
    async def test_async_hook(self):
        hook = AsyncMock(return_value="ok")
        assert await call_hook(hook, "a") == "ok"
        hook.assert_awaited_once_with("a")


class TestAudit:
    def test_emits_json(self, options, caplog):
        with caplog.at_level(logging.INFO, logger="authnz-audit"):
            _audit(options, "grant_issued", client_id="foo")
        entry = json.loads(caplog.records[-1].getMessage())
        assert entry["event"] == "grant_issued"
        assert entry["client_id"] == "foo"
        assert "ts" in entry

    def test_notifies_observer(self, options):
        options.observer = MagicMock()
        _audit(options, "token_issued", client_id="foo")
        options.observer.assert_called_once_with("token_issued", {"client_id": "foo"})

    def test_observer_failure_is_contained(self, options):
        options.observer = MagicMock(side_effect=RuntimeError("boom"))
        _audit(options, "token_issued")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

class TestClaims:
    @pytest.mark.asyncio
    async def test_without_hook_returns_grant_claims(self, options):
        options.get_claims = None
        grant = _grant()
        claims = await get_claims("id_token", grant, options)
        assert claims == grant.claims
        assert claims is not grant.claims

    @pytest.mark.asyncio
    async def test_hook_receives_scopes_without_internal_ones(self, options):
        options.get_claims = MagicMock(return_value={"sub": "user-1"})
        await get_claims("id_token", _grant(scope="openid offline_access email"), options)
        target, claims, scopes = options.get_claims.call_args.args
        assert target == "id_token"
        assert scopes == {"email"}

    @pytest.mark.asyncio
    async def test_missing_subject_is_server_error(self, options):
        with pytest.raises(OIDCError) as exc:
            await get_claims("id_token", _grant(claims={"email": "x"}), options)
        assert exc.value.kind is ErrorCode.SERVER_ERROR

    def test_filter_claims_by_scope(self):
        claims = {"sub": "1", "email": "a@b", "name": "A", "phone_number": "555"}
        assert filter_claims_by_scope("id_token", claims, {"email"}) == {"sub": "1", "email": "a@b"}
        assert filter_claims_by_scope("id_token", claims, set()) == {"sub": "1"}


# ---------------------------------------------------------------------------
# Grants and PKCE
# ---------------------------------------------------------------------------

class TestPkce:
    def test_s256(self):
        assert verify_pkce("verifier-123", _s256("verifier-123"), "s256") is True

    def test_sha256_alias(self):
        assert verify_pkce("verifier-123", _s256("verifier-123"), "sha256") is True

    def test_plain(self):
        assert verify_pkce("abc", "abc", "plain") is True

    def test_mismatch(self):
        assert verify_pkce("other", _s256("verifier-123"), "s256") is False


class TestValidateGrant:
    def _meta(self, **overrides):
        values = dict(grant_type="authorization_code", client_id="foo", redirect_uri=CALLBACK, code="c0de")
        values.update(overrides)
        return TokenRequestMeta(**values)

    def test_valid(self, registered_client):
        validate_grant(_grant(), registered_client, self._meta())

    def test_missing(self, registered_client):
        with pytest.raises(OIDCError) as exc:
            validate_grant(None, registered_client, self._meta())
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    def test_used(self, registered_client):
        with pytest.raises(OIDCError) as exc:
            validate_grant(_grant(used=True), registered_client, self._meta())
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    def test_expired(self, registered_client):
        with pytest.raises(OIDCError) as exc:
            validate_grant(_grant(expires_at=time.time() - 1), registered_client, self._meta())
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    def test_other_client(self, public_client):
        with pytest.raises(OIDCError) as exc:
            validate_grant(_grant(), public_client, self._meta())
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    def test_redirect_uri_mismatch(self, registered_client):
        with pytest.raises(OIDCError) as exc:
            validate_grant(_grant(), registered_client, self._meta(redirect_uri="http://other/cb"))
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    def test_scope_beyond_grant(self, registered_client):
        meta = self._meta(scope="openid profile", scope_set={"openid", "profile"})
        with pytest.raises(OIDCError) as exc:
            validate_grant(_grant(), registered_client, meta)
        assert exc.value.kind is ErrorCode.INVALID_SCOPE

    def test_pkce_verifier_required(self, registered_client):
        grant = _grant(code_challenge=_s256("v" * 43), code_challenge_method="s256")
        with pytest.raises(OIDCError) as exc:
            validate_grant(grant, registered_client, self._meta())
        assert exc.value.kind is ErrorCode.INVALID_REQUEST

    def test_pkce_verifier_mismatch(self, registered_client):
        grant = _grant(code_challenge=_s256("v" * 43), code_challenge_method="s256")
        with pytest.raises(OIDCError) as exc:
            validate_grant(grant, registered_client, self._meta(code_verifier="w" * 43))
        assert exc.value.kind is ErrorCode.INVALID_GRANT


class TestConsumeGrant:
    @pytest.mark.asyncio
    async def test_second_consumption_rejected(self, options):
        grant = _grant()
        await options.database.insert("grant", grant)
        await consume_grant(grant, options)
        with pytest.raises(OIDCError) as exc:
            await consume_grant(grant, options)
        assert exc.value.kind is ErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_concurrent_consumption_has_one_winner(self, options):
        grant = _grant()
        await options.database.insert("grant", grant)
        results = await asyncio.gather(
            *(consume_grant(grant, options) for _ in range(5)), return_exceptions=True)
        assert sum(1 for r in results if r is None) == 1
        assert all(isinstance(r, OIDCError) for r in results if r is not None)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class TestTokens:
    def test_access_token(self, options, registered_client):
        token, token_type = generate_access_token(_grant(), registered_client, options)
        payload = jwt.decode(token, options.signing_key, algorithms=["HS256"], audience="foo")
        assert token_type == "jwt"
        assert payload["sub"] == "user-1"
        assert payload["iss"] == BASE
        assert payload["exp"] - payload["iat"] == 7200
        assert payload["scope"] == "email openid"

    @pytest.mark.asyncio
    async def test_id_token_carries_nonce_and_filtered_claims(self, options, registered_client):
        options.get_claims = filter_claims_by_scope
        token = await generate_id_token(_grant(nonce="n-1"), registered_client, options)
        payload = jwt.decode(token, options.signing_key, algorithms=["HS256"], audience="foo")
        assert payload["nonce"] == "n-1"
        assert payload["email"] == "user@example.com"
        assert "name" not in payload
