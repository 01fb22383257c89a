"""
Access Gate Tests
=================

Tests for authgate/gate.py, authgate/gateway.py and the session layer.

Test Coverage:
--------------
1. No-cache headers on every gated response
2. Allow-listed paths, exclusions and /health are never challenged
3. Unauthenticated requests are redirected to the provider (PKCE property)
4. AUTH_MODE=NONE installs nothing
5. Enrichment hook runs once per session, also under concurrency
6. /me endpoint with and without enrich_me
"""

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from authgate.auth.oidc import generate_code_challenge
from authgate.auth.session import EnrichmentGuard, Session, SessionCookieSigner
from authgate.auth.store import MemorySessionStore
from authgate.config import Settings
from authgate.errors import ConfigurationError
from authgate.gate import NO_CACHE_HEADERS
from authgate.gateway import setup_auth
from authgate.models import OidcAuth, SessionData, User

from .helpers import (
    AUTH_URL,
    COOKIE_DOMAIN,
    build_client,
    build_settings,
    load_session,
    seed_session,
    session_id_from_cookie,
)


def authenticated_session() -> SessionData:
    return SessionData(
        user=User(username="alice", email="alice@example.com", raw={"sub": "user-sub-123"}),
        auth=OidcAuth(tokens={"access_token": "at", "id_token": "idt"}),
    )


# ============================================================================
# Challenge
# ============================================================================

class TestChallenge:
    """Test suite for unauthenticated requests"""

    def test_unauthenticated_request_redirects_to_provider(self, oidc_client):
        response = oidc_client.get("/app/data", follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(AUTH_URL + "?")

        params = {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}
        assert params["client_id"] == "gateway"
        assert params["redirect_uri"] == "http://testserver/app/callback"
        assert params["response_type"] == "code"
        assert params["scope"] == "openid profile email"
        assert "code_challenge" not in params

    def test_challenge_carries_no_cache_headers(self, oidc_client):
        response = oidc_client.get("/app/data", follow_redirects=False)

        for header, value in NO_CACHE_HEADERS.items():
            assert response.headers[header] == value

    def test_pkce_challenge_matches_stored_verifier(self, store):
        settings = build_settings(OIDC_ENABLE_PKCE=True)
        client = build_client(settings, store)

        response = client.get("/app/data", follow_redirects=False)

        params = {k: v[0] for k, v in parse_qs(urlsplit(response.headers["location"]).query).items()}
        assert params["code_challenge_method"] == "S256"

        sid = session_id_from_cookie(client, settings)
        verifier = load_session(store, sid).auth.pkce_verifier
        assert verifier
        assert params["code_challenge"] == generate_code_challenge(verifier, "S256")

    def test_plain_challenge_method_sends_verifier(self, store):
        settings = build_settings(OIDC_ENABLE_PKCE=True, OIDC_CODE_CHALLENGE_METHOD="plain")
        client = build_client(settings, store)

        response = client.get("/app/data", follow_redirects=False)

        params = {k: v[0] for k, v in parse_qs(urlsplit(response.headers["location"]).query).items()}
        sid = session_id_from_cookie(client, settings)
        assert params["code_challenge_method"] == "plain"
        assert params["code_challenge"] == load_session(store, sid).auth.pkce_verifier

    def test_tampered_cookie_starts_new_session(self, oidc_client, store, oidc_settings):
        seed_session(oidc_client, store, oidc_settings, authenticated_session())
        oidc_client.cookies.set(oidc_settings.SESSION_NAME, "seeded-session-id.forged.signature", domain=COOKIE_DOMAIN)

        response = oidc_client.get("/app/data", follow_redirects=False)

        assert response.status_code == 302


# ============================================================================
# Pass-through
# ============================================================================

class TestPassThrough:
    """Test suite for requests the gate lets through"""

    def test_authenticated_request_reaches_route(self, oidc_client, store, oidc_settings):
        seed_session(oidc_client, store, oidc_settings, authenticated_session())

        response = oidc_client.get("/app/data")

        assert response.status_code == 200
        assert response.json() == {"data": "protected"}
        assert response.headers["Cache-Control"] == NO_CACHE_HEADERS["Cache-Control"]

    def test_access_token_alone_counts_as_authenticated(self, oidc_client, store, oidc_settings):
        seed_session(oidc_client, store, oidc_settings, SessionData(auth=OidcAuth(tokens={"access_token": "at"})))

        response = oidc_client.get("/app/data", follow_redirects=False)

        assert response.status_code == 200

    def test_landing_page_returns_user(self, oidc_client, store, oidc_settings):
        seed_session(oidc_client, store, oidc_settings, authenticated_session())

        response = oidc_client.get("/app")

        assert response.status_code == 200
        assert response.json()["user"]["username"] == "alice"

    def test_health_is_public(self, oidc_client):
        response = oidc_client.get("/health", follow_redirects=False)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_excluded_path_is_public(self, store):
        settings = build_settings(EXCLUDE_PATH_FROM_PROTECT="/app/public, /status")
        client = build_client(settings, store)

        assert client.get("/app/public", follow_redirects=False).status_code == 200
        assert client.get("/app/data", follow_redirects=False).status_code == 302

    def test_unprotected_setup_installs_no_gate(self, store):
        app = FastAPI()
        setup_auth(app, build_settings(), store=store, protect=False)

        @app.get("/app/data")
        async def data():
            return {"data": "open"}

        response = TestClient(app).get("/app/data", follow_redirects=False)

        assert response.status_code == 200
        assert "Cache-Control" not in response.headers


# ============================================================================
# Setup
# ============================================================================

class TestSetup:
    """Test suite for setup_auth"""

    def test_none_mode_installs_nothing(self, store):
        settings = build_settings(AUTH_MODE="none")
        client = build_client(settings, store)

        response = client.get("/app", follow_redirects=False)

        assert response.status_code == 200
        assert response.json()["user"] is None
        assert client.get("/app/me").status_code == 404
        assert client.app.state.auth_protocol is None
        assert len(store) == 0

    def test_unsupported_mode_raises(self):
        with pytest.raises(ConfigurationError, match="Unsupported authMode"):
            setup_auth(FastAPI(), build_settings(AUTH_MODE="SAML"))

    def test_missing_oidc_settings_raise(self):
        settings = Settings(_env_file=None, AUTH_MODE="OIDC", OIDC_CLIENT_ID="gateway")

        with pytest.raises(ConfigurationError, match="OIDC_ISSUER"):
            setup_auth(FastAPI(), settings)

    def test_caller_store_receives_sessions(self, oidc_settings):
        store = MemorySessionStore()
        client = build_client(oidc_settings, store)

        response = client.get("/app/data", follow_redirects=False)

        assert response.status_code == 302
        assert client.app.state.session_store is store
        assert len(store) == 1
        assert load_session(store, session_id_from_cookie(client, oidc_settings)) is not None

    def test_protocol_exposed_on_app_state(self, oidc_client):
        protocol = oidc_client.app.state.auth_protocol

        assert protocol is not None
        assert "/app/callback" in protocol.internal_paths()


# ============================================================================
# Enrichment
# ============================================================================

class TestEnrichment:
    """Test suite for the run-once enrichment hook"""

    def test_hook_runs_once_per_session(self, store, oidc_settings):
        calls = []

        async def enrich(session):
            calls.append(session.username)
            session.extras["department"] = "research"

        client = build_client(oidc_settings, store, enrich_session=enrich)
        sid = seed_session(client, store, oidc_settings, authenticated_session())

        assert client.get("/app/data").status_code == 200
        assert client.get("/app/data").status_code == 200

        assert calls == ["alice"]
        stored = load_session(store, sid)
        assert stored.enriched is True
        assert stored.extras == {"department": "research"}

    def test_failing_hook_retries_on_next_request(self, store, oidc_settings):
        calls = []

        def enrich(session):
            calls.append(1)
            raise RuntimeError("profile service down")

        client = build_client(oidc_settings, store, enrich_session=enrich)
        sid = seed_session(client, store, oidc_settings, authenticated_session())

        assert client.get("/app/data").status_code == 200
        assert client.get("/app/data").status_code == 200

        assert len(calls) == 2
        assert load_session(store, sid).enriched is False

    def test_hook_not_run_for_unauthenticated_request(self, store, oidc_settings):
        calls = []
        client = build_client(oidc_settings, store, enrich_session=lambda session: calls.append(1))

        client.get("/app/data", follow_redirects=False)

        assert calls == []

    @pytest.mark.asyncio
    async def test_concurrent_requests_enrich_once(self):
        store = MemorySessionStore()
        await store.set("shared", authenticated_session())
        calls = []

        async def enrich(session):
            calls.append(session.id)
            await asyncio.sleep(0.01)

        guard = EnrichmentGuard(enrich)
        first = Session("shared", await store.get("shared"), store)
        second = Session("shared", await store.get("shared"), store)

        results = await asyncio.gather(guard.run_once(first), guard.run_once(second))

        assert calls == ["shared"]
        assert sorted(results) == [False, True]
        assert first.enriched and second.enriched
        assert (await store.get("shared")).enriched is True


# ============================================================================
# /me
# ============================================================================

class TestMeEndpoint:
    """Test suite for GET {base}{ME_ENDPOINT_CONTEXT}"""

    def test_unauthenticated_returns_401(self, oidc_client):
        response = oidc_client.get("/app/me")

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_returns_user_merged_with_enrich_me(self, store, oidc_settings):
        async def enrich_me(session):
            return {"department": "research", "email": "override@example.com"}

        client = build_client(oidc_settings, store, enrich_me=enrich_me)
        seed_session(client, store, oidc_settings, authenticated_session())

        body = client.get("/app/me").json()

        assert body["username"] == "alice"
        assert body["department"] == "research"
        assert body["email"] == "override@example.com"

    def test_custom_me_context(self, store):
        settings = build_settings(ME_ENDPOINT_CONTEXT="/whoami")
        client = build_client(settings, store)
        seed_session(client, store, settings, authenticated_session())

        assert client.get("/app/whoami").json()["username"] == "alice"


class TestSessionCookie:
    """Test suite for the signed session cookie"""

    def test_new_session_sets_cookie_flags(self, oidc_client, oidc_settings):
        response = oidc_client.get("/app/data", follow_redirects=False)

        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{oidc_settings.SESSION_NAME}=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "secure" not in cookie

    def test_secure_flag_outside_development(self, store):
        settings = build_settings(ENVIRONMENT="PRODUCTION")
        client = build_client(settings, store)

        response = client.get("/health")

        assert "; secure" in response.headers["set-cookie"]

    def test_signer_rejects_tampered_value(self):
        signer = SessionCookieSigner("secret-a")
        other = SessionCookieSigner("secret-b")

        assert signer.unsign(signer.sign("abc")) == "abc"
        assert signer.unsign(other.sign("abc")) is None
