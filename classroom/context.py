"""
Session & profile context: "who is the current actor, and are they allowed in".

One instance per browser. It listens to the auth client and keeps three things
in sync: `user`, `profile`, `is_loading`. Pages only ever read `snapshot`.

    Initial        is_loading=True,  user=None, profile=None
    UserKnown      user set, profile fetch running
    Ready          user + profile, is_loading=False
    Degraded       user set, profile=None, is_loading=False (profile unavailable,
                   NOT the same thing as signed out)

Every session event restarts the user -> profile pipeline. Each run is numbered
and only the newest run may write state, so a slow fetch for a previous user
can't land on top of a newer one.

Profile rows also change underneath a signed-in user (an admin approves,
rejects or changes a role). The context listens to "profiles" change events
and `apply_profile_changes()` folds the ones for its user into the snapshot;
the app calls it at the start of every request.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from classroom.errors import BackendError, DuplicateKeyError, NotFoundError
from classroom.provisioning import default_profile_row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextSnapshot:
    user: Any = None  # backend.User
    profile: Optional[Dict[str, Any]] = None
    is_loading: bool = True

    @property
    def is_admin(self) -> bool:
        return bool(self.profile) and self.profile.get("role") == "admin"

    @property
    def role(self) -> Optional[str]:
        return self.profile.get("role") if self.profile else None


SnapshotListener = Callable[[ContextSnapshot], None]


class SessionContext:
    def __init__(self, client, backend, admin_email: Optional[str] = None) -> None:
        self._client = client
        self._backend = backend
        self._admin_email = admin_email

        self._snapshot = ContextSnapshot()
        self._listeners: List[SnapshotListener] = []
        self._attempt = 0
        self._pending: Set[asyncio.Task] = set()
        self._started: Optional[asyncio.Future] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._profile_changes = None  # realtime.Channel on "profiles"

    # ------------------------------------------------------------ observers

    @property
    def snapshot(self) -> ContextSnapshot:
        return self._snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _set(self, **changes) -> None:
        current = self._snapshot
        snap = ContextSnapshot(
            user=changes.get("user", current.user),
            profile=changes.get("profile", current.profile),
            is_loading=changes.get("is_loading", current.is_loading),
        )
        if snap == current:
            return
        self._snapshot = snap
        logger.debug(
            "context -> user=%s role=%s loading=%s",
            snap.user.id if snap.user else None, snap.role, snap.is_loading,
        )
        for listener in list(self._listeners):
            listener(snap)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Subscribe to session changes and probe the current session once. Safe to call repeatedly."""
        if self._started is None:
            self._started = asyncio.ensure_future(self._initialise())
        await self._started

    async def _initialise(self) -> None:
        self._unsubscribe = self._client.on_session_change(self._on_session_change)
        # admins change role/approval_status while the user stays signed in
        self._profile_changes = self._backend.subscribe_to_table("profiles")
        try:
            session = await self._client.get_session()
        except BackendError as e:
            logger.warning("initial session probe failed: %s", e)
            session = None

        # an event that fired during the probe already started a newer run
        if self._attempt == 0:
            self._begin(session)
        await self.settle()

    def apply_profile_changes(self) -> None:
        """
        Merge queued profile row changes for the signed-in user into the snapshot.

        The row from the change event is newer than anything a pipeline run still
        in flight could return, so it wins and that run is dropped.
        """
        if self._profile_changes is None:
            return
        queue = self._profile_changes.queue
        while not queue.empty():
            event = queue.get_nowait()
            user = self._snapshot.user
            row = event.old if event.event_type == "DELETE" else event.new
            if user is None or not row or row.get("id") != user.id:
                continue

            self._attempt += 1
            if event.event_type == "DELETE":
                logger.warning("profile of %s was deleted", user.id)
                self._set(profile=None, is_loading=False)
            else:
                logger.info(
                    "profile of %s changed: role=%s approval=%s",
                    user.id, row.get("role"), row.get("approval_status"),
                )
                self._set(profile=dict(row), is_loading=False)

    def close(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._profile_changes is not None:
            self._profile_changes.close()
            self._profile_changes = None
        for task in list(self._pending):
            task.cancel()
        self._listeners.clear()

    async def settle(self) -> None:
        """Wait until no profile pipeline is in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def reload(self) -> None:
        """Run the profile pipeline again for whoever is signed in (retry button, profile edits)."""
        try:
            session = await self._client.get_session()
        except BackendError as e:
            logger.warning("session probe failed on reload: %s", e)
            return
        self._begin(session)
        await self.settle()

    # ------------------------------------------------------------- pipeline

    def _on_session_change(self, event, session) -> None:
        self._begin(session)

    def _begin(self, session) -> None:
        self._attempt += 1
        attempt = self._attempt
        user = session.user if session else None

        if user is None:
            self._set(user=None, profile=None, is_loading=False)
            return

        current = self._snapshot.user
        if current is None or current.id != user.id:
            # never show the previous user's profile next to the new user
            self._set(user=user, profile=None, is_loading=True)
        else:
            self._set(user=user)

        task = asyncio.ensure_future(self._load_profile(user, attempt))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _is_current(self, user, attempt: int) -> bool:
        current = self._snapshot.user
        return attempt == self._attempt and current is not None and current.id == user.id

    async def _load_profile(self, user, attempt: int) -> None:
        try:
            profile = await self._fetch_or_provision(user)
        except Exception:
            logger.exception("profile pipeline crashed for %s", user.id)
            profile = None

        if not self._is_current(user, attempt):
            logger.debug("dropping stale profile result for %s (attempt %s)", user.id, attempt)
            return

        if profile is None:
            logger.warning("profile unavailable for %s", user.id)
        elif profile.get("approval_status") == "pending":
            logger.info("user %s is pending approval", user.id)
        elif profile.get("approval_status") == "rejected":
            logger.info("user %s has been rejected", user.id)
        self._set(profile=profile, is_loading=False)

    async def _fetch_or_provision(self, user) -> Optional[Dict[str, Any]]:
        try:
            return await self._backend.select_one("profiles", {"id": user.id})
        except NotFoundError:
            logger.info("no profile for %s, creating one", user.id)
        except BackendError as e:
            logger.warning("profile fetch failed for %s: %s (%s)", user.id, e, e.code)
            return None

        row = default_profile_row(
            user.id, user.email, (user.user_metadata or {}).get("full_name"), self._admin_email,
        )
        try:
            inserted = await self._backend.insert("profiles", [row])
            return inserted[0]
        except DuplicateKeyError:
            # signup already made it (or another tab beat us), use that one
            logger.info("profile for %s already exists, using it", user.id)
        except BackendError as e:
            logger.warning("profile creation failed for %s: %s (%s)", user.id, e, e.code)
            return None

        try:
            return await self._backend.select_one("profiles", {"id": user.id})
        except BackendError as e:
            logger.warning("profile re-fetch failed for %s: %s (%s)", user.id, e, e.code)
            return None
