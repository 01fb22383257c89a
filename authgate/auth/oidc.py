"""
OpenID Connect adapter.

Implements the authorization code flow (optionally with PKCE), refresh and
back-channel logout against a provider laid out like Keycloak:

    {issuer}/protocol/openid-connect/auth     authorization endpoint
    {issuer}/protocol/openid-connect/token    token endpoint
    {issuer}/protocol/openid-connect/certs    JWKS
    {issuer}/protocol/openid-connect/logout   end-session endpoint
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Request

from authgate.auth.protocol import AuthProtocol
from authgate.auth.session import Session
from authgate.auth.utils import verify_with_provider_keys
from authgate.errors import SignatureError, UpstreamError
from authgate.models import OidcAuth, SessionData, User
from authgate.proxy import create_http_client

logger = logging.getLogger(__name__)

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (86 characters)
    """
    verifier_bytes = secrets.token_bytes(64)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str, method: str = "S256") -> str:
    """
    Generate code challenge from verifier.

    Args:
        verifier: Code verifier string
        method: S256 (hash) or plain (verifier as-is)

    Returns:
        Base64-URL-encoded SHA256 hash of verifier for S256
    """
    if method == "plain":
        return verifier
    digest = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


def _build_url(endpoint: str, params: Dict[str, str]) -> str:
    return f"{endpoint}?{urlencode(params, quote_via=quote)}"


# =============================================================================
# Adapter
# =============================================================================

class OidcProtocol(AuthProtocol):
    """OIDC authorization code flow adapter."""

    # -------------------------------------------------------------------------
    # Challenge / recognition / logout
    # -------------------------------------------------------------------------

    def build_challenge(self, request: Request, session: Session) -> str:
        """
        Build the authorization URL and, with PKCE, remember the verifier.
        """
        settings = self.settings
        params = {
            "client_id": settings.OIDC_CLIENT_ID,
            "redirect_uri": settings.OIDC_REDIRECT_URI,
            "response_type": "code",
            "scope": settings.OIDC_SCOPE or "openid profile email",
        }

        if settings.OIDC_ENABLE_PKCE:
            method = settings.OIDC_CODE_CHALLENGE_METHOD or "S256"
            code_verifier = generate_code_verifier()
            session.begin_oidc_challenge(code_verifier)
            params["code_challenge"] = generate_code_challenge(code_verifier, method)
            params["code_challenge_method"] = method

        return _build_url(settings.oidc_authorization_endpoint, params)

    def is_authenticated(self, session: Session) -> bool:
        return bool(session.user) or bool(session.tokens.get("access_token"))

    def logout_url(self, id_token: Optional[str] = None) -> str:
        params = {
            "post_logout_redirect_uri": self.settings.POST_LOGOUT_REDIRECT_URI or self.base_path,
        }
        if id_token:
            params["id_token_hint"] = id_token
        return _build_url(self.settings.oidc_end_session_endpoint, params)

    def create_router(self) -> APIRouter:
        from authgate.auth.routes import create_oidc_router

        return create_oidc_router(self)

    # -------------------------------------------------------------------------
    # Token endpoint
    # -------------------------------------------------------------------------

    async def _request_tokens(self, payload: Dict[str, str], action: str) -> Dict[str, Any]:
        """
        POST a form-encoded grant to the token endpoint.

        Raises:
            UpstreamError: If the provider answers with a non-success status
            httpx.HTTPError: If the provider is unreachable
        """
        settings = self.settings
        payload["client_id"] = settings.OIDC_CLIENT_ID
        if settings.OIDC_CLIENT_SECRET:
            payload["client_secret"] = settings.OIDC_CLIENT_SECRET

        async with create_http_client(settings) as client:
            response = await client.post(
                settings.oidc_token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

        if not response.is_success:
            error_data = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
            error_msg = error_data.get("error_description") or error_data.get("error") or "no detail"
            raise UpstreamError(
                f"{action} failed: {response.status_code} ({error_msg})",
                status_code=response.status_code,
            )

        return response.json()

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.OIDC_REDIRECT_URI,
        }
        if self.settings.OIDC_ENABLE_PKCE and code_verifier:
            payload["code_verifier"] = code_verifier
        return await self._request_tokens(payload, "Token request")

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._request_tokens(payload, "Refresh token")

    async def complete_login(
        self,
        code: str,
        code_verifier: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Exchange the code and verify the returned ID token.

        Returns:
            (raw token response, verified ID token claims)
        """
        tokens = await self.exchange_code(code, code_verifier)
        id_token = tokens.get("id_token")
        if not id_token:
            raise UpstreamError("Token response missing id_token")
        claims = await verify_with_provider_keys(
            self.settings,
            id_token,
            access_token=tokens.get("access_token"),
        )
        return tokens, claims

    @staticmethod
    def build_user(claims: Dict[str, Any]) -> User:
        return User(
            username=claims.get("preferred_username") or claims.get("sub"),
            email=claims.get("email") or None,
            roles=claims.get("roles") or None,
            raw=claims,
        )

    # -------------------------------------------------------------------------
    # Back-channel logout
    # -------------------------------------------------------------------------

    async def verify_logout_token(self, logout_token: str) -> Dict[str, Any]:
        """
        Verify a provider-pushed logout token.

        Signature and time claims are always checked. With
        OIDC_BACKCHANNEL_STRICT the logout event, the absence of nonce and
        the presence of sub or sid are checked as well.

        Raises:
            TokenVerificationError: If the token is rejected
        """
        claims = await verify_with_provider_keys(self.settings, logout_token)

        if self.settings.OIDC_BACKCHANNEL_STRICT:
            events = claims.get("events")
            if not isinstance(events, dict):
                raise SignatureError("Logout token missing 'events' claim")
            if BACKCHANNEL_LOGOUT_EVENT not in events:
                raise SignatureError(f"Logout token missing '{BACKCHANNEL_LOGOUT_EVENT}' event")
            if "nonce" in claims:
                raise SignatureError("Logout token must not contain 'nonce' claim")
            if not claims.get("sub") and not claims.get("sid"):
                raise SignatureError("Logout token must contain either 'sub' or 'sid' claim")

        return claims

    @staticmethod
    def logout_matcher(claims: Dict[str, Any]):
        """
        Predicate selecting stored sessions a logout token refers to.

        Matches on the provider session id (sid) when the token carries
        one, otherwise on the subject.
        """
        sid = claims.get("sid")
        sub = claims.get("sub")

        def matches(data: SessionData) -> bool:
            if not isinstance(data.auth, OidcAuth) or data.user is None:
                return False
            raw = data.user.raw
            if sid:
                return raw.get("sid") == sid
            return bool(sub) and raw.get("sub") == sub

        return matches
