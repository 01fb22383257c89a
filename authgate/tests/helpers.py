"""
Shared test helpers: signing keys, token minting, settings and session seeding.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from authgate.auth.session import SessionCookieSigner
from authgate.auth.store import SessionStore
from authgate.config import Settings
from authgate.main import create_app
from authgate.models import SessionData

ISSUER = "https://sso.example.com/realms/test"
AUTH_URL = f"{ISSUER}/protocol/openid-connect/auth"
TOKEN_URL = f"{ISSUER}/protocol/openid-connect/token"
JWKS_URL = f"{ISSUER}/protocol/openid-connect/certs"
END_SESSION_URL = f"{ISSUER}/protocol/openid-connect/logout"

CAS_DNS = "https://cas.example.com"

TEST_KID = "test-key-id-2024"
SESSION_SECRET = "test-session-secret-1234567890"

# TestClient cookies for host "testserver" are stored under this domain
COOKIE_DOMAIN = "testserver.local"


# Test RSA key pairs for mocking JWKS
def generate_test_key():
    """Generate an RSA private key for testing"""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )


TEST_PRIVATE_KEY = generate_test_key()
OTHER_PRIVATE_KEY = generate_test_key()


def create_mock_jwks(kid: str = TEST_KID, private_key=TEST_PRIVATE_KEY, alg: Optional[str] = "RS256") -> Dict[str, Any]:
    """
    Create a JWKS document holding the public half of private_key.

    Args:
        kid: Key ID to include in JWKS
        private_key: Key whose public part is published
        alg: Value of the 'alg' member, or None to omit it
    """
    key = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    if alg:
        key["alg"] = alg
    return {"keys": [key]}


def create_mock_token(
    claims: Optional[Dict[str, Any]] = None,
    kid: Optional[str] = TEST_KID,
    private_key=TEST_PRIVATE_KEY,
    exp_delta_minutes: int = 60,
) -> str:
    """
    Create an RS256 token signed with a test key.

    Args:
        claims: Claims added to (or overriding) the defaults
        kid: Key ID header, or None to omit it
        private_key: Signing key
        exp_delta_minutes: Token expiry in minutes
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "sub": "user-sub-123",
        "aud": "gateway",
        "iat": now,
        "exp": now + timedelta(minutes=exp_delta_minutes),
    }
    payload.update(claims or {})
    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, private_key, algorithm="RS256", headers=headers)


def build_settings(**overrides) -> Settings:
    """Settings for tests; .env files are ignored."""
    values = {
        "AUTH_MODE": "OIDC",
        "ENVIRONMENT": "DEVELOPMENT",
        "SESSION_SECRET": SESSION_SECRET,
        "OIDC_ISSUER": ISSUER,
        "OIDC_CLIENT_ID": "gateway",
        "OIDC_CLIENT_SECRET": "gateway-secret",
        "OIDC_REDIRECT_URI": "http://testserver/app/callback",
        "CAS_DNS_NAME": CAS_DNS,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_client(settings: Settings, store: SessionStore, **hooks) -> TestClient:
    """
    Gateway app with two extra application routes:
    /app/data (protected) and /app/public (used as exclusion in tests).
    """
    app = create_app(settings, store=store, **hooks)

    @app.get("/app/data")
    async def data():
        return {"data": "protected"}

    @app.get("/app/public")
    async def public():
        return {"data": "public"}

    return TestClient(app)


def seed_session(
    client: TestClient,
    store: SessionStore,
    settings: Settings,
    data: SessionData,
    session_id: str = "seeded-session-id",
) -> str:
    """Store a session record and give the client its signed cookie."""
    asyncio.run(store.set(session_id, data))
    signer = SessionCookieSigner(settings.SESSION_SECRET, settings.SESSION_MAX_AGE_SECONDS)
    client.cookies.set(settings.SESSION_NAME, signer.sign(session_id), domain=COOKIE_DOMAIN)
    return session_id


def load_session(store: SessionStore, session_id: str) -> Optional[SessionData]:
    return asyncio.run(store.get(session_id))


def session_id_from_cookie(client: TestClient, settings: Settings) -> Optional[str]:
    signer = SessionCookieSigner(settings.SESSION_SECRET, settings.SESSION_MAX_AGE_SECONDS)
    raw = client.cookies.get(settings.SESSION_NAME)
    return signer.unsign(raw) if raw else None
