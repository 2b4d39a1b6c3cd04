"""
Per-browser auth "transport" + the registry of browsers.

Idea:
- A browser gets an opaque id in a cookie (no credentials in it) once it
  signs in or up. Anonymous requests run on a throwaway entry.
- Behind that id sits one AuthClient (holds the backend session for that
  browser, refreshes it, tells listeners when it changes) and one
  SessionContext (who is signed in there and what their profile says).
- Sign-in/up/out go through the AuthClient, pages read the context.

In-memory, like any SPA's client state. If the app ever runs as several
replicas this moves to a shared store.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
import logging
import secrets
from typing import Callable, Dict, List, Optional

from classroom.backend import Backend, Session
from classroom.context import SessionContext
from classroom.errors import AuthError

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "classroom_session"


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


Listener = Callable[[AuthEvent, Optional[Session]], None]


class AuthClient:
    """
    Holds one browser's session.

    Listeners are plain callables `(event, session)`; they're called
    synchronously, so anything slow should be scheduled, not awaited, inside them.
    """

    def __init__(self, backend: Backend) -> None:
        self._backend = backend
        self._session: Optional[Session] = None
        self._listeners: List[Listener] = []

    def on_session_change(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        logger.debug("auth event %s for %s", event.value, session.user.id if session else None)
        for cb in list(self._listeners):
            cb(event, session)

    @property
    def session(self) -> Optional[Session]:
        """What the client holds right now, no refresh."""
        return self._session

    async def get_session(self) -> Optional[Session]:
        """
        Current session, or None. An expired access token is traded for a new
        one transparently; if that fails the session is gone (signed out).
        """
        s = self._session
        if s is None or not s.expired():
            return s

        try:
            fresh = await self._backend.refresh_session(s.refresh_token)
        except AuthError as e:
            logger.info("session refresh failed for %s: %s", s.user.id, e)
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)
            return None

        # someone else may have swapped the session while we were refreshing
        if self._session is s:
            self._session = fresh
            self._emit(AuthEvent.TOKEN_REFRESHED, fresh)
        return self._session

    async def sign_in(self, email: str, password: str) -> Session:
        session = await self._backend.sign_in(email, password)
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> Session:
        session = await self._backend.sign_up(email, password, metadata)
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        if self._session is None:
            return
        self._session = None
        self._emit(AuthEvent.SIGNED_OUT, None)


@dataclass
class BrowserSession:
    id: str
    client: AuthClient
    context: SessionContext
    expires_at: datetime


class ClientRegistry:
    """
    In-memory browser storage.

    Maps: browser id -> (AuthClient + SessionContext + idle expiry)

    A browser is only stored once it holds a session (see `add`); anonymous
    requests get a throwaway entry from `build`. Expired entries are swept
    whenever a new one is added.
    """

    def __init__(self, backend: Backend, ttl_minutes: int = 720) -> None:
        self._backend = backend
        self._ttl = timedelta(minutes=ttl_minutes)
        self._lock = Lock()
        self._browsers: Dict[str, BrowserSession] = {}

    def build(self) -> BrowserSession:
        """New browser id with its own client/context, not stored yet. The context still needs start()."""
        client = AuthClient(self._backend)
        return BrowserSession(
            id=secrets.token_urlsafe(24),
            client=client,
            context=SessionContext(client, self._backend, admin_email=self._backend.admin_email),
            expires_at=datetime.now(timezone.utc) + self._ttl,
        )

    def add(self, entry: BrowserSession) -> None:
        now = datetime.now(timezone.utc)
        entry.expires_at = now + self._ttl
        with self._lock:
            expired = self._pop_expired(now)
            self._browsers[entry.id] = entry
        for old in expired:
            old.context.close()

    def get(self, browser_id: Optional[str]) -> Optional[BrowserSession]:
        """
        Return the browser entry, or None if unknown/expired.

        Expired entries are dropped on read, and a hit slides the expiry.
        """
        if not browser_id:
            return None
        now = datetime.now(timezone.utc)
        with self._lock:
            entry = self._browsers.get(browser_id)
            if not entry:
                return None
            if entry.expires_at <= now:
                del self._browsers[browser_id]
                expired = entry
            else:
                entry.expires_at = now + self._ttl
                return entry
        expired.context.close()
        return None

    def sweep(self) -> int:
        """Drop every expired entry, returns how many went."""
        with self._lock:
            expired = self._pop_expired(datetime.now(timezone.utc))
        for entry in expired:
            entry.context.close()
        if expired:
            logger.info("dropped %s idle browser sessions", len(expired))
        return len(expired)

    def _pop_expired(self, now: datetime) -> List[BrowserSession]:
        # caller holds the lock
        gone = [bid for bid, e in self._browsers.items() if e.expires_at <= now]
        return [self._browsers.pop(bid) for bid in gone]

    def close(self) -> None:
        with self._lock:
            entries = list(self._browsers.values())
            self._browsers.clear()
        for entry in entries:
            entry.context.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._browsers)
