"""
Session State Management Module
===============================

Holds the per-browser session record and every transition the protocol
adapters and the access gate are allowed to make on it.

A session is identified by an opaque random id carried in a signed cookie
(itsdangerous, the same scheme Starlette's own SessionMiddleware uses). The
record itself lives in a SessionStore.

Transitions:
- begin_oidc_challenge     store the PKCE verifier of a new authorization request
- complete_oidc_login      tokens + normalized user after a successful exchange;
                           the PKCE verifier is spent and cleared
- replace_tokens           refresh overwrites tokens in place
- complete_cas_login       raw CAS attributes after ticket validation
- normalize_cas_user       derive the common user shape from CAS attributes
- mark_enriched            run-once flag of the enrichment hook
- destroy                  logout / back-channel logout / single logout
"""

import asyncio
import inspect
import logging
import secrets
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import Request
from itsdangerous import BadSignature, TimestampSigner
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from authgate.auth.store import SessionStore
from authgate.models import CasAuth, OidcAuth, SessionData, User

logger = logging.getLogger(__name__)

SESSION_SCOPE_KEY = "authgate.session"

SessionHook = Callable[["Session"], Union[Any, Awaitable[Any]]]


# =============================================================================
# Session
# =============================================================================

class Session:
    """
    A loaded session record bound to its id and store.

    Protocol state is a tagged union (OidcAuth | CasAuth | Unauthenticated),
    so an adapter only ever sees fields of its own protocol.
    """

    def __init__(
        self,
        session_id: str,
        data: SessionData,
        store: SessionStore,
        is_new: bool = False,
    ):
        self.id = session_id
        self.data = data
        self.store = store
        self.is_new = is_new
        self.destroyed = False
        self._snapshot = data.model_dump(mode="json")

    def __repr__(self) -> str:
        return f"Session(id={self.id[:8]}..., kind={self.data.auth.kind}, user={self.username!r})"

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def user(self) -> Optional[User]:
        return self.data.user

    @property
    def username(self) -> Optional[str]:
        return self.data.user.username if self.data.user else None

    @property
    def oidc(self) -> Optional[OidcAuth]:
        auth = self.data.auth
        return auth if isinstance(auth, OidcAuth) else None

    @property
    def cas(self) -> Optional[CasAuth]:
        auth = self.data.auth
        return auth if isinstance(auth, CasAuth) else None

    @property
    def tokens(self) -> Dict[str, Any]:
        return self.oidc.tokens if self.oidc else {}

    @property
    def pkce_verifier(self) -> Optional[str]:
        return self.oidc.pkce_verifier if self.oidc else None

    @property
    def enriched(self) -> bool:
        return self.data.enriched

    @property
    def extras(self) -> Dict[str, Any]:
        return self.data.extras

    @property
    def modified(self) -> bool:
        return self.data.model_dump(mode="json") != self._snapshot

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _oidc_state(self) -> OidcAuth:
        if not isinstance(self.data.auth, OidcAuth):
            self.data.auth = OidcAuth()
        return self.data.auth

    def begin_oidc_challenge(self, pkce_verifier: Optional[str]) -> None:
        self._oidc_state().pkce_verifier = pkce_verifier

    def complete_oidc_login(self, tokens: Dict[str, Any], user: User) -> None:
        state = self._oidc_state()
        state.tokens = dict(tokens)
        state.pkce_verifier = None
        self.data.user = user

    def replace_tokens(self, tokens: Dict[str, Any]) -> None:
        self._oidc_state().tokens = dict(tokens)

    def complete_cas_login(
        self,
        username: str,
        attributes: Optional[Dict[str, Any]] = None,
        ticket: Optional[str] = None,
    ) -> None:
        self.data.auth = CasAuth(
            attributes={**(attributes or {}), "user": username},
            ticket=ticket,
        )

    def normalize_cas_user(self) -> bool:
        """
        Derive session.user from the CAS attributes.

        Only runs when CAS attributes are present and no user is set yet.

        Returns:
            True if a user was derived
        """
        cas = self.cas
        if cas is None or self.data.user is not None or not cas.attributes.get("user"):
            return False
        self.data.user = User(
            username=str(cas.attributes["user"]),
            email=None,
            roles=None,
            raw=dict(cas.attributes),
        )
        return True

    def mark_enriched(self) -> None:
        self.data.enriched = True

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def save(self) -> None:
        if self.destroyed:
            return
        await self.store.set(self.id, self.data)
        self._snapshot = self.data.model_dump(mode="json")

    async def reload(self) -> bool:
        """
        Replace the local copy with the stored record.

        Returns:
            False if the record no longer exists
        """
        stored = await self.store.get(self.id)
        if stored is None:
            return False
        self.data = stored
        self._snapshot = stored.model_dump(mode="json")
        return True

    async def destroy(self) -> None:
        """Delete the record; the middleware expires the cookie."""
        await self.store.delete(self.id)
        self.data = SessionData()
        self.destroyed = True
        logger.info("Session destroyed")


def get_session(request: Request) -> Session:
    """
    FastAPI dependency returning the current request's session.

    Usage in routes:
        @router.get("/whoami")
        async def whoami(session: Session = Depends(get_session)):
            return {"user": session.username}

    Raises:
        RuntimeError: If SessionMiddleware is not installed
    """
    session = request.scope.get(SESSION_SCOPE_KEY)
    if session is None:
        raise RuntimeError("SessionMiddleware must be installed to access the session")
    return session


# =============================================================================
# Session Middleware
# =============================================================================

class SessionCookieSigner:
    """Signs and verifies the session id carried in the cookie."""

    def __init__(self, secret_key: str, max_age: Optional[int] = None):
        self.signer = TimestampSigner(str(secret_key))
        self.max_age = max_age

    def sign(self, session_id: str) -> str:
        return self.signer.sign(session_id.encode("utf-8")).decode("utf-8")

    def unsign(self, value: str) -> Optional[str]:
        try:
            return self.signer.unsign(value.encode("utf-8"), max_age=self.max_age).decode("utf-8")
        except BadSignature:
            return None


class SessionMiddleware:
    """
    ASGI middleware attaching a Session to every HTTP request.

    A request without a valid cookie gets a fresh session, which is saved
    even if untouched. Changed sessions are written back when the response
    starts; destroyed ones get an expired cookie.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: SessionStore,
        secret_key: str,
        session_cookie: str = "NSESSIONID",
        max_age: Optional[int] = 14 * 24 * 60 * 60,
        path: str = "/",
        same_site: str = "lax",
        https_only: bool = True,
        save_uninitialized: bool = True,
    ) -> None:
        self.app = app
        self.store = store
        self.cookie_signer = SessionCookieSigner(secret_key, max_age)
        self.session_cookie = session_cookie
        self.max_age = max_age
        self.path = path
        self.save_uninitialized = save_uninitialized
        self.security_flags = "httponly; samesite=" + same_site
        if https_only:
            self.security_flags += "; secure"

    async def load(self, connection: HTTPConnection) -> Session:
        raw_cookie = connection.cookies.get(self.session_cookie)
        if raw_cookie:
            session_id = self.cookie_signer.unsign(raw_cookie)
            if session_id:
                data = await self.store.get(session_id)
                if data is not None:
                    return Session(session_id, data, self.store)
        return Session(secrets.token_urlsafe(32), SessionData(), self.store, is_new=True)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        session = await self.load(HTTPConnection(scope))
        scope[SESSION_SCOPE_KEY] = session

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if session.destroyed:
                    headers.append("Set-Cookie", self._cookie("null", expire=True))
                elif session.modified or (session.is_new and self.save_uninitialized):
                    await session.save()
                    if session.is_new:
                        headers.append("Set-Cookie", self._cookie(self.cookie_signer.sign(session.id)))
            await send(message)

        await self.app(scope, receive, send_wrapper)

    def _cookie(self, value: str, expire: bool = False) -> str:
        if expire:
            max_age = "expires=Thu, 01 Jan 1970 00:00:00 GMT; "
        else:
            max_age = f"Max-Age={self.max_age}; " if self.max_age else ""
        return f"{self.session_cookie}={value}; path={self.path}; {max_age}{self.security_flags}"


# =============================================================================
# Enrichment Guard
# =============================================================================

class EnrichmentGuard:
    """
    Runs the session enrichment hook at most once per session.

    Requests on the same session are serialized by an asyncio.Lock keyed by
    session id; under the lock the record is reloaded from the store and the
    flag persisted before the lock is released. This only serializes
    requests within one process.
    """

    def __init__(self, hook: SessionHook):
        self.hook = hook
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def run_once(self, session: Session) -> bool:
        """
        Invoke the hook unless the session was already enriched.

        Hook errors are logged and swallowed; the flag stays unset so the
        next request retries.

        Returns:
            True if the hook ran successfully during this call
        """
        if session.enriched:
            return False

        lock = self._lock_for(session.id)
        async with lock:
            stored = await session.store.get(session.id)
            if stored is not None and stored.enriched:
                session.data = stored
                return False

            try:
                logger.info("Enriching session...")
                result = self.hook(session)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Failed to enrich session: {e}", exc_info=True)
                return False

            session.mark_enriched()
            await session.save()
            return True


__all__ = [
    "Session",
    "SessionHook",
    "SessionCookieSigner",
    "SessionMiddleware",
    "EnrichmentGuard",
    "get_session",
    "SESSION_SCOPE_KEY",
]
