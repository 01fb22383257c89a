"""
Gateway setup: wires the session middleware, the active protocol adapter,
the /me route and the access gate into a FastAPI application.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from fastapi import APIRouter, Depends, FastAPI
from fastapi.responses import JSONResponse

from authgate.auth.oidc import OidcProtocol
from authgate.auth.protocol import AuthProtocol
from authgate.auth.session import EnrichmentGuard, Session, SessionHook, SessionMiddleware, get_session
from authgate.auth.store import MemorySessionStore, SessionStore
from authgate.cas.protocol import CasProtocol
from authgate.config import AuthMode, Settings, get_settings, validate_configuration
from authgate.errors import ConfigurationError
from authgate.gate import AccessGateMiddleware

logger = logging.getLogger(__name__)

MeHook = Callable[[Session], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

PROTOCOLS = {
    AuthMode.OIDC: OidcProtocol,
    AuthMode.CAS: CasProtocol,
}


def create_me_router(settings: Settings, enrich_me: Optional[MeHook] = None) -> APIRouter:
    router = APIRouter(tags=["authentication"])

    @router.get(settings.me_path)
    async def me(session: Session = Depends(get_session)):
        """
        Return the normalized user merged with enrich_me(session).
        """
        if not session.user:
            return JSONResponse(status_code=401, content={"error": "Not authenticated"})

        extra_data: Dict[str, Any] = {}
        if enrich_me is not None:
            result = enrich_me(session)
            extra_data = (await result if inspect.isawaitable(result) else result) or {}

        return {**session.user.model_dump(), **extra_data}

    return router


def setup_auth(
    app: FastAPI,
    settings: Optional[Settings] = None,
    *,
    enrich_session: Optional[SessionHook] = None,
    enrich_me: Optional[MeHook] = None,
    store: Optional[SessionStore] = None,
    protect: bool = True,
    public_paths: Iterable[str] = (),
) -> Optional[AuthProtocol]:
    """
    Install authentication on an application.

    Args:
        app: FastAPI application
        settings: Gateway settings (defaults to get_settings())
        enrich_session: Hook run once per authenticated session
        enrich_me: Hook whose result is merged into every /me response
        store: Session backend (defaults to an in-memory store)
        protect: Install the access gate in front of every route
        public_paths: Application paths the gate never challenges

    Returns:
        The active protocol adapter, or None when AUTH_MODE=NONE

    Raises:
        ConfigurationError: Unsupported mode or missing mode settings
    """
    settings = settings or get_settings()
    mode = settings.auth_mode

    app.state.settings = settings
    app.state.auth_protocol = None

    if mode is AuthMode.NONE:
        logger.info("[auth] AUTH_MODE=NONE -> skipping authentication setup.")
        return None

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"[auth] {warning}")
    if not status["valid"]:
        raise ConfigurationError("; ".join(status["errors"]))

    protocol = PROTOCOLS[mode](settings)
    if store is None:
        store = MemorySessionStore(settings.SESSION_MAX_AGE_SECONDS)

    protocol_router = protocol.create_router()
    app.include_router(protocol_router)
    app.include_router(create_me_router(settings, enrich_me))

    if protect:
        # gateway routes are served ahead of the gate, as internal paths
        bypass_paths = (
            protocol.internal_paths()
            + settings.exclude_paths_list
            + [route.path for route in protocol_router.routes]
            + [settings.me_path]
            + list(public_paths)
        )
        app.add_middleware(
            AccessGateMiddleware,
            protocol=protocol,
            bypass_paths=bypass_paths,
            guard=EnrichmentGuard(enrich_session) if enrich_session else None,
        )

    # added last so it wraps the gate
    app.add_middleware(
        SessionMiddleware,
        store=store,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        https_only=settings.cookie_secure,
    )

    app.state.auth_protocol = protocol
    app.state.session_store = store

    logger.info(f"[auth] AUTH_MODE={mode.value} authentication installed under '{settings.APP_BASE_PATH}'")
    return protocol
