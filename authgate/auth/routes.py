"""
Authentication routes for the OIDC adapter.

This module implements the callback of the authorization code flow, logout,
provider-pushed back-channel logout and token refresh. All routes live under
APP_BASE_PATH.
"""

import json
import logging
from typing import TYPE_CHECKING, Optional
from urllib.parse import parse_qs

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from authgate.auth.session import Session, get_session
from authgate.errors import AuthGatewayError, MissingParameterError

if TYPE_CHECKING:
    from authgate.auth.oidc import OidcProtocol

logger = logging.getLogger(__name__)


async def _read_logout_token(request: Request) -> Optional[str]:
    """
    Extract logout_token from a JSON or form-encoded body.
    """
    body = await request.body()
    if not body:
        return None

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        try:
            values = parse_qs(body.decode("utf-8")).get("logout_token")
        except UnicodeDecodeError:
            return None
        return values[0] if values else None

    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload.get("logout_token")


def create_oidc_router(protocol: "OidcProtocol") -> APIRouter:
    """
    Build the OIDC router bound to an adapter instance.
    """
    settings = protocol.settings
    router = APIRouter(prefix=settings.APP_BASE_PATH, tags=["authentication"])

    # =========================================================================
    # Callback Endpoint
    # =========================================================================

    @router.get("/callback")
    async def callback(
        code: Optional[str] = Query(None, description="Authorization code from the provider"),
        error: Optional[str] = Query(None, description="Error code if authentication failed"),
        session: Session = Depends(get_session),
    ):
        """
        Handle the provider redirect after login.

        1. Requires `code` (400 otherwise)
        2. Sends the PKCE verifier stored at challenge time
        3. Exchanges the code and verifies the ID token against fresh JWKS
        4. Stores tokens and the normalized user, clears the verifier and
           redirects to the app; on failure the session is left as it was
        """
        if not code:
            if error:
                logger.warning("Provider returned error on callback: %s", error)
            return PlainTextResponse("Missing code", status_code=400)

        code_verifier = session.pkce_verifier

        try:
            tokens, claims = await protocol.complete_login(code, code_verifier)
            user = protocol.build_user(claims)
        except (AuthGatewayError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Login failed: {e}", exc_info=True)
            return PlainTextResponse("Login failed", status_code=500)

        session.complete_oidc_login(tokens, user)
        logger.info("OIDC login completed for %s", user.username)

        return RedirectResponse(url=settings.APP_BASE_PATH or "/", status_code=302)

    # =========================================================================
    # Logout Endpoint
    # =========================================================================

    @router.get("/logout")
    async def logout(session: Session = Depends(get_session)):
        """
        Destroy the session and send the browser to the end-session endpoint.

        The ID token hint is read before the session is destroyed.
        """
        id_token = session.tokens.get("id_token")
        await session.destroy()
        return RedirectResponse(url=protocol.logout_url(id_token), status_code=302)

    # =========================================================================
    # Back-channel Logout Endpoint
    # =========================================================================

    @router.post("/backchannel-logout")
    async def backchannel_logout(request: Request, session: Session = Depends(get_session)):
        """
        Provider-pushed logout notification (machine to machine).

        Verification failure answers 400 and destroys nothing.
        """
        logout_token = await _read_logout_token(request)
        if not logout_token:
            return PlainTextResponse("Missing logout_token", status_code=400)

        try:
            claims = await protocol.verify_logout_token(logout_token)
        except (AuthGatewayError, httpx.HTTPError) as e:
            logger.warning(f"Back-channel logout rejected: {e}")
            return PlainTextResponse("Bad Request", status_code=400)

        await session.destroy()
        removed = await session.store.delete_where(protocol.logout_matcher(claims))
        logger.info("Back-channel logout destroyed %d stored session(s)", removed)

        return PlainTextResponse("OK", status_code=200)

    # =========================================================================
    # Refresh Endpoint
    # =========================================================================

    @router.get("/refresh")
    async def refresh(session: Session = Depends(get_session)):
        """
        Exchange the stored refresh token and overwrite session tokens.

        Returns:
            The raw token endpoint payload
        """
        try:
            refresh_token = session.tokens.get("refresh_token")
            if not refresh_token:
                raise MissingParameterError("refresh_token", "No refresh token")
            tokens = await protocol.refresh(refresh_token)
        except MissingParameterError as e:
            return PlainTextResponse(str(e), status_code=400)
        except (AuthGatewayError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Refresh failed: {e}", exc_info=True)
            return PlainTextResponse("Refresh failed", status_code=500)

        session.replace_tokens(tokens)
        return JSONResponse(content=tokens)

    return router


__all__ = [
    "create_oidc_router",
]
