"""
CAS routes: login greeting, logout and single logout.
"""

import logging
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from authgate.auth.session import Session, get_session
from authgate.cas.protocol import CasProtocol, parse_logout_request

logger = logging.getLogger(__name__)


def create_cas_router(protocol: CasProtocol) -> APIRouter:
    """
    Build the CAS router bound to an adapter instance.
    """
    settings = protocol.settings
    router = APIRouter(prefix=settings.APP_BASE_PATH, tags=["cas"])

    @router.get("/login")
    async def login(session: Session = Depends(get_session)):
        cas = session.cas
        return PlainTextResponse(f"Hello {cas.attributes.get('user') if cas else None}")

    @router.get("/logout")
    async def logout(session: Session = Depends(get_session)):
        """Destroy the session, then send the browser to CAS logout."""
        await session.destroy()
        return RedirectResponse(url=protocol.logout_url(), status_code=302)

    @router.post("/cas/validate")
    async def single_logout(request: Request, session: Session = Depends(get_session)):
        """
        CAS single logout: the server posts a logoutRequest naming the
        service ticket; every session created from it is destroyed.
        """
        if not settings.CAS_SLO:
            return PlainTextResponse("Single logout disabled", status_code=404)

        try:
            body = (await request.body()).decode("utf-8")
        except UnicodeDecodeError:
            return PlainTextResponse("Missing logoutRequest", status_code=400)
        values = parse_qs(body).get("logoutRequest")
        ticket = parse_logout_request(values[0]) if values else None
        if not ticket:
            return PlainTextResponse("Missing logoutRequest", status_code=400)

        removed = await session.store.delete_where(protocol.ticket_matcher(ticket))
        logger.info("CAS single logout destroyed %d session(s)", removed)
        return PlainTextResponse("OK", status_code=200)

    return router
