"""
Authentication Package

This package handles the session model and the OpenID Connect adapter of
the gateway.

Modules:
- utils: JWKS fetching, key lookup and token verification
- session: Session record transitions, cookie middleware, run-once enrichment
- store: Session storage backends
- protocol: Interface shared by the OIDC and CAS adapters
- oidc: OIDC adapter (challenge, code exchange, refresh, back-channel logout)
- routes: OIDC endpoints (/callback, /logout, /backchannel-logout, /refresh)

The OIDC flow:
1. Access gate redirects an unauthenticated browser to the provider
2. User authenticates with the provider
3. Provider redirects back to /callback with an authorization code
4. Gateway exchanges the code, verifies the ID token, populates the session
5. Subsequent requests pass the gate on the persisted session
"""

from .oidc import OidcProtocol
from .session import Session, get_session
from .store import MemorySessionStore, SessionStore

__all__ = [
    "OidcProtocol",
    "Session",
    "get_session",
    "MemorySessionStore",
    "SessionStore",
]
