"""
Access-Control Gate
===================

Per-request decision made before any protected route handler runs:

1. Every response gets no-store/no-cache headers
2. Protocol-internal paths, configured exclusions and the gateway's own
   routes pass straight through
3. authenticated := session.user is set, or the active protocol recognizes
   its own state (OIDC access token / CAS name attribute)
4. Unauthenticated requests are redirected to the identity provider
5. Authenticated requests run the enrichment hook once per session
6. Everything else reaches the route handler

The gate depends only on the AuthProtocol interface.
"""

import logging
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from authgate.auth.protocol import AuthProtocol
from authgate.auth.session import EnrichmentGuard, get_session

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


class AccessGateMiddleware(BaseHTTPMiddleware):
    """
    Challenge unauthenticated requests; must run inside SessionMiddleware.
    """

    def __init__(
        self,
        app: ASGIApp,
        protocol: AuthProtocol,
        bypass_paths: Iterable[str] = (),
        guard: Optional[EnrichmentGuard] = None,
    ) -> None:
        super().__init__(app)
        self.protocol = protocol
        self.bypass_paths = frozenset(bypass_paths)
        self.guard = guard

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await self.decide(request)
        if response is None:
            response = await call_next(request)
        response.headers.update(NO_CACHE_HEADERS)
        return response

    async def decide(self, request: Request) -> Optional[Response]:
        """
        Returns:
            A response that ends the request (challenge or reject), or None
            to pass control to the route handler
        """
        session = get_session(request)
        self.protocol.normalize(session)

        path = request.url.path
        if path in self.bypass_paths or not self.protocol.is_challenged_path(path):
            return None

        intercepted = await self.protocol.intercept(request, session)
        if intercepted is not None:
            return intercepted

        if not (session.user or self.protocol.is_authenticated(session)):
            challenge_url = self.protocol.build_challenge(request, session)
            logger.debug("Challenging unauthenticated request for %s", path)
            return RedirectResponse(url=challenge_url, status_code=302)

        if self.guard is not None:
            await self.guard.run_once(session)

        return None
