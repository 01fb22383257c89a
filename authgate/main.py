"""
FastAPI Gateway Application Factory
===================================

Entry point for the authentication gateway that sits in front of a web
application and authenticates browsers against an OIDC provider or a CAS
server before they reach it.

Architecture:
    Browser → Gateway (this service) → Identity provider (OIDC or CAS)

Routes (relative to APP_BASE_PATH, default /app):
    - /callback            : OIDC authorization code callback
    - /logout              : Destroy session, redirect to provider logout
    - /backchannel-logout  : Provider-pushed OIDC logout
    - /refresh             : Refresh OIDC tokens
    - /login, /cas/validate: CAS greeting and single logout
    - /me                  : Normalized user
    - /health              : Health check endpoint (not under the base path)

Running the Service:
    Development:
        uvicorn authgate.main:create_app --factory --reload --port 8080

    Production:
        uvicorn authgate.main:create_app --factory --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn authgate.main:create_app --factory --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.auth.session import SESSION_SCOPE_KEY, SessionHook
from authgate.auth.store import SessionStore
from authgate.auth.utils import clear_jwks_cache
from authgate.config import Settings, get_settings
from authgate.gateway import MeHook, setup_auth

SERVICE_VERSION = "1.0.0"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs the active mode; shutdown clears the JWKS cache.
    """
    logger = logging.getLogger("authgate.main")
    settings: Settings = app.state.settings

    logger.info(
        "Starting authentication gateway",
        extra={
            "auth_mode": settings.AUTH_MODE,
            "base_path": settings.APP_BASE_PATH,
            "version": SERVICE_VERSION,
        },
    )

    yield

    clear_jwks_cache()
    logger.info("Authentication gateway shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    enrich_session: Optional[SessionHook] = None,
    enrich_me: Optional[MeHook] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware (when ALLOWED_ORIGINS is set)
        - Authentication (session, protocol routes, access gate)
        - Exception handlers

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If the authentication settings are unusable
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Authentication Gateway",
        description="OIDC / CAS authentication gateway",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    setup_auth(
        app,
        settings,
        enrich_session=enrich_session,
        enrich_me=enrich_me,
        store=store,
        public_paths=["/health"],
    )

    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Service health information
        """
        return {
            "status": "ok",
            "service": "authgate",
            "version": SERVICE_VERSION,
            "auth_mode": settings.AUTH_MODE,
        }

    @app.get(settings.APP_BASE_PATH or "/", tags=["Application"])
    async def index(request: Request):
        """Protected landing page of the application."""
        session = request.scope.get(SESSION_SCOPE_KEY)
        user = session.user.model_dump() if session is not None and session.user else None
        return {"service": "authgate", "user": user}

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log unhandled errors and return a generic 500 body.
        """
        logger = logging.getLogger("authgate.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "authgate.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
