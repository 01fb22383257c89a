"""
CAS adapter.

Ticket validation is delegated to python-cas; this module builds the login
and logout URLs, lands service tickets on the original request URL and
normalizes the CAS attributes into the common user shape.
"""

import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

from cas import CASClient, SingleLogoutMixin
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from authgate.auth.protocol import AuthProtocol
from authgate.auth.session import Session
from authgate.errors import UpstreamError
from authgate.models import CasAuth, SessionData

logger = logging.getLogger(__name__)


def parse_logout_request(payload: str) -> Optional[str]:
    """
    Extract the SessionIndex (the service ticket) from a CAS single logout
    request.

    Returns:
        The ticket, or None if the payload is not a logout request
    """
    slos = SingleLogoutMixin.get_saml_slos(payload.encode("utf-8"))
    if not slos:
        return None
    return (slos[0].text or "").strip() or None


class CasProtocol(AuthProtocol):
    """CAS ticket-based single sign-on adapter."""

    @property
    def server_url(self) -> str:
        return f"{self.settings.CAS_DNS_NAME}{self.settings.CAS_SERVER_PATH}"

    def build_challenge(self, request: Request, session: Session) -> str:
        """
        Send the browser to CAS login with the original request URL as service,
        so it lands back on its intended destination.
        """
        settings = self.settings
        service = urlencode({"service": str(request.url)}, quote_via=quote)
        return f"{settings.CAS_DNS_NAME}{settings.CAS_LOGIN_PATH or '/cas/login'}?{service}"

    def is_authenticated(self, session: Session) -> bool:
        if session.user:
            return True
        cas = session.cas
        return bool(cas and cas.attributes.get("name"))

    def logout_url(self, id_token: Optional[str] = None) -> str:
        settings = self.settings
        redirect_uri = settings.POST_LOGOUT_REDIRECT_URI or f"{settings.CAS_DNS_NAME}{settings.APP_BASE_PATH}"
        service = urlencode({"service": redirect_uri}, quote_via=quote)
        return f"{settings.CAS_DNS_NAME}{settings.CAS_LOGOUT_PATH}?{service}"

    def create_router(self) -> APIRouter:
        from authgate.cas.routes import create_cas_router

        return create_cas_router(self)

    def is_challenged_path(self, path: str) -> bool:
        if any(path.startswith(prefix) for prefix in self.settings.cas_ignore_list):
            return False
        match = self.settings.cas_match_list
        if match:
            return any(path.startswith(prefix) for prefix in match)
        return True

    def normalize(self, session: Session) -> None:
        session.normalize_cas_user()

    # -------------------------------------------------------------------------
    # Ticket validation
    # -------------------------------------------------------------------------

    def _client(self, service_url: str):
        return CASClient(
            version=self.settings.CAS_VERSION,
            service_url=service_url,
            server_url=self.server_url,
        )

    async def validate_ticket(self, ticket: str, service_url: str) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Validate a service ticket with the CAS server.

        Returns:
            (user, attributes); user is None when CAS rejected the ticket

        Raises:
            UpstreamError: If the CAS server could not be queried
        """
        client = self._client(service_url)
        try:
            user, attributes, _pgtiou = await run_in_threadpool(client.verify_ticket, ticket)
        except Exception as e:
            raise UpstreamError(f"CAS ticket validation failed: {e}")
        return user, dict(attributes or {})

    async def intercept(self, request: Request, session: Session) -> Optional[Response]:
        """
        Land a service ticket CAS appended to the original request URL.

        On success the session is populated and the browser is redirected to
        the same URL without the ticket. A rejected ticket answers 401.
        """
        ticket = request.query_params.get("ticket")
        if not ticket or request.method != "GET" or session.user:
            return None

        service_url = str(request.url.remove_query_params("ticket"))
        try:
            user, attributes = await self.validate_ticket(ticket, service_url)
        except UpstreamError as e:
            logger.error(str(e))
            return PlainTextResponse("CAS ticket validation failed", status_code=401)

        if not user:
            logger.warning("CAS rejected service ticket for %s", service_url)
            return PlainTextResponse("CAS ticket validation failed", status_code=401)

        session.complete_cas_login(user, attributes, ticket)
        session.normalize_cas_user()
        logger.info("CAS login completed for %s", user)
        return RedirectResponse(url=service_url, status_code=302)

    @staticmethod
    def ticket_matcher(ticket: str):
        """Predicate selecting stored sessions created from a service ticket."""

        def matches(data: SessionData) -> bool:
            return isinstance(data.auth, CasAuth) and data.auth.ticket == ticket

        return matches
