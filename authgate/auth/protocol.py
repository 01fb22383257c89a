"""
Protocol interface shared by the OIDC and CAS adapters.

The access gate and setup_auth depend only on this interface; the concrete
adapter is picked once from AUTH_MODE.
"""

from abc import ABC, abstractmethod
from typing import Optional

from fastapi import APIRouter, Request
from starlette.responses import Response

from authgate.auth.session import Session
from authgate.config import Settings


class AuthProtocol(ABC):
    """An identity protocol the gateway can challenge, recognize and log out."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def base_path(self) -> str:
        return self.settings.APP_BASE_PATH

    @abstractmethod
    def build_challenge(self, request: Request, session: Session) -> str:
        """URL the browser is redirected to when unauthenticated."""

    @abstractmethod
    def is_authenticated(self, session: Session) -> bool:
        """Protocol-specific authentication check."""

    @abstractmethod
    def logout_url(self, id_token: Optional[str] = None) -> str:
        """Provider logout URL the browser is sent to after the session is destroyed."""

    @abstractmethod
    def create_router(self) -> APIRouter:
        """Routes the protocol serves under APP_BASE_PATH."""

    def internal_paths(self) -> list:
        """Protocol endpoints that must stay reachable while unauthenticated."""
        return [
            f"{self.base_path}/callback",
            f"{self.base_path}/backchannel-logout",
            f"{self.base_path}/cas/validate",
            f"{self.base_path}/cas/serviceValidate",
        ]

    def is_challenged_path(self, path: str) -> bool:
        """Whether the gate may challenge a request for path at all."""
        return True

    async def intercept(self, request: Request, session: Session) -> Optional[Response]:
        """
        Hook for protocol traffic arriving on ordinary paths (e.g. a CAS
        ticket on the service URL). Returns a response to short-circuit the
        gate, or None.
        """
        return None

    def normalize(self, session: Session) -> None:
        """Derive session.user from protocol state when possible."""
