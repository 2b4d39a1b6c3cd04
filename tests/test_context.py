import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from classroom.access import AccessLevel, resolve_access
from classroom.auth_client import AuthEvent
from classroom.backend import Session, User
from classroom.context import SessionContext
from classroom.errors import DuplicateKeyError, NotFoundError, TransientNetworkError
from classroom.realtime import EVENT_TYPES, Broadcaster, ChangeEvent

pytestmark = pytest.mark.anyio

ADMIN = "prof@example.com"


def make_session(user_id, email=None, full_name="Someone"):
    user = User(id=user_id, email=email or f"{user_id}@example.com", user_metadata={"full_name": full_name})
    return Session(
        access_token=f"access-{user_id}",
        refresh_token=f"refresh-{user_id}",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        user=user,
    )


class FakeClient:
    def __init__(self, session=None):
        self.session = session
        self.listeners = []

    def on_session_change(self, cb):
        self.listeners.append(cb)
        return lambda: self.listeners.remove(cb)

    async def get_session(self):
        return self.session

    def emit(self, event, session):
        self.session = session
        for cb in list(self.listeners):
            cb(event, session)


class FakeBackend:
    """profiles table only"""

    def __init__(self):
        self.profiles = {}
        self.gates = {}
        self.failing = set()
        self.hidden_once = set()
        self.insert_calls = 0
        self.broadcaster = Broadcaster()

    async def select_one(self, table, filters):
        uid = filters["id"]
        if uid in self.gates:
            await self.gates[uid].wait()
        if uid in self.failing:
            raise TransientNetworkError("connection reset")
        if uid in self.hidden_once:
            # row shows up right after this read
            self.hidden_once.discard(uid)
            raise NotFoundError("no rows")
        if uid not in self.profiles:
            raise NotFoundError("no rows")
        return dict(self.profiles[uid])

    async def insert(self, table, rows):
        self.insert_calls += 1
        row = dict(rows[0])
        if row["id"] in self.profiles:
            raise DuplicateKeyError("duplicate key value violates unique constraint")
        self.profiles[row["id"]] = row
        return [row]

    def subscribe_to_table(self, table, event_types=EVENT_TYPES):
        return self.broadcaster.subscribe(table, event_types)

    def change_profile(self, uid, **patch):
        old = self.profiles.get(uid)
        new = {**old, **patch}
        self.profiles[uid] = new
        self.broadcaster.publish(ChangeEvent(table="profiles", event_type="UPDATE", old=old, new=new))


async def eventually(pred, timeout=1.0):
    async def poll():
        while not pred():
            await asyncio.sleep(0)
    await asyncio.wait_for(poll(), timeout)


def profile(uid, role="student", approval="approved"):
    return {"id": uid, "email": f"{uid}@example.com", "full_name": uid, "role": role, "approval_status": approval}


async def test_starts_loading_and_settles_signed_out():
    ctx = SessionContext(FakeClient(), FakeBackend(), admin_email=ADMIN)
    assert ctx.snapshot.is_loading
    assert ctx.snapshot.user is None

    await ctx.start()
    snap = ctx.snapshot
    assert not snap.is_loading
    assert snap.user is None and snap.profile is None


async def test_existing_session_loads_profile():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    ctx = SessionContext(FakeClient(make_session("u1")), backend, admin_email=ADMIN)

    await ctx.start()
    assert ctx.snapshot.user.id == "u1"
    assert ctx.snapshot.profile["id"] == "u1"
    assert not ctx.snapshot.is_loading


async def test_start_is_idempotent():
    client = FakeClient()
    ctx = SessionContext(client, FakeBackend())
    await ctx.start()
    await ctx.start()
    assert len(client.listeners) == 1


async def test_slow_fetch_for_previous_user_is_discarded():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    backend.profiles["u2"] = profile("u2")
    backend.gates["u1"] = asyncio.Event()
    client = FakeClient()
    ctx = SessionContext(client, backend)
    await ctx.start()

    seen = []
    ctx.subscribe(seen.append)

    client.emit(AuthEvent.SIGNED_IN, make_session("u1"))
    client.emit(AuthEvent.SIGNED_IN, make_session("u2"))
    await eventually(lambda: ctx.snapshot.profile is not None)

    backend.gates["u1"].set()
    await ctx.settle()

    assert ctx.snapshot.user.id == "u2"
    assert ctx.snapshot.profile["id"] == "u2"
    for snap in seen:
        if snap.profile is not None:
            assert snap.profile["id"] == snap.user.id


async def test_user_change_resets_profile_before_fetch():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    backend.profiles["u2"] = profile("u2")
    client = FakeClient(make_session("u1"))
    ctx = SessionContext(client, backend)
    await ctx.start()

    backend.gates["u2"] = asyncio.Event()
    client.emit(AuthEvent.SIGNED_IN, make_session("u2"))
    snap = ctx.snapshot
    assert snap.user.id == "u2"
    assert snap.profile is None
    assert snap.is_loading

    backend.gates["u2"].set()
    await ctx.settle()
    assert ctx.snapshot.profile["id"] == "u2"


async def test_token_refresh_keeps_profile_while_refetching():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    client = FakeClient(make_session("u1"))
    ctx = SessionContext(client, backend)
    await ctx.start()

    backend.gates["u1"] = asyncio.Event()
    client.emit(AuthEvent.TOKEN_REFRESHED, make_session("u1"))
    assert ctx.snapshot.profile["id"] == "u1"
    assert not ctx.snapshot.is_loading

    backend.gates["u1"].set()
    await ctx.settle()
    assert ctx.snapshot.profile["id"] == "u1"


async def test_sign_out_clears_everything():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    client = FakeClient(make_session("u1"))
    ctx = SessionContext(client, backend)
    await ctx.start()

    client.emit(AuthEvent.SIGNED_OUT, None)
    snap = ctx.snapshot
    assert (snap.user, snap.profile, snap.is_loading) == (None, None, False)


async def test_missing_profile_is_created_as_pending_student():
    backend = FakeBackend()
    ctx = SessionContext(FakeClient(make_session("u1", full_name="Ada")), backend, admin_email=ADMIN)
    await ctx.start()

    p = ctx.snapshot.profile
    assert p["role"] == "student"
    assert p["approval_status"] == "pending"
    assert p["full_name"] == "Ada"
    assert resolve_access(ctx.snapshot.user, p) is AccessLevel.PENDING_APPROVAL


async def test_admin_address_gets_admin_profile():
    backend = FakeBackend()
    session = make_session("boss", email="Prof@Example.com")
    ctx = SessionContext(FakeClient(session), backend, admin_email=ADMIN)
    await ctx.start()

    assert ctx.snapshot.profile["role"] == "admin"
    assert ctx.snapshot.profile["approval_status"] == "approved"
    assert ctx.snapshot.is_admin


async def test_provisioning_race_uses_existing_row():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1", approval="approved")
    backend.hidden_once.add("u1")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()

    assert backend.insert_calls == 1
    assert len(backend.profiles) == 1
    assert ctx.snapshot.profile["approval_status"] == "approved"


async def test_two_tabs_end_up_with_one_profile():
    backend = FakeBackend()
    first = SessionContext(FakeClient(make_session("u1")), backend)
    second = SessionContext(FakeClient(make_session("u1")), backend)
    await first.start()
    await second.start()

    assert len(backend.profiles) == 1
    assert first.snapshot.profile == second.snapshot.profile


async def test_fetch_failure_degrades_and_retry_recovers():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    backend.failing.add("u1")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()

    snap = ctx.snapshot
    assert snap.user.id == "u1"
    assert snap.profile is None
    assert not snap.is_loading
    assert resolve_access(snap.user, snap.profile) is AccessLevel.PROFILE_UNAVAILABLE

    backend.failing.clear()
    await ctx.reload()
    assert ctx.snapshot.profile["id"] == "u1"


async def test_unsubscribe_stops_notifications():
    client = FakeClient()
    ctx = SessionContext(client, FakeBackend())
    await ctx.start()

    seen = []
    unsubscribe = ctx.subscribe(seen.append)
    unsubscribe()
    client.emit(AuthEvent.SIGNED_IN, make_session("u1"))
    await ctx.settle()
    assert seen == []


async def test_approval_reaches_signed_in_user():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1", approval="pending")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()
    assert resolve_access(ctx.snapshot.user, ctx.snapshot.profile) is AccessLevel.PENDING_APPROVAL

    backend.change_profile("u1", approval_status="approved")
    ctx.apply_profile_changes()
    assert resolve_access(ctx.snapshot.user, ctx.snapshot.profile) is AccessLevel.STUDENT

    backend.change_profile("u1", approval_status="rejected")
    ctx.apply_profile_changes()
    assert resolve_access(ctx.snapshot.user, ctx.snapshot.profile) is AccessLevel.REJECTED


async def test_demotion_reaches_signed_in_admin():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1", role="admin")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()
    assert ctx.snapshot.is_admin

    backend.change_profile("u1", role="student")
    ctx.apply_profile_changes()
    assert not ctx.snapshot.is_admin
    assert ctx.snapshot.role == "student"


async def test_other_users_profile_changes_are_ignored():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    backend.profiles["u2"] = profile("u2", approval="pending")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()
    before = ctx.snapshot

    seen = []
    ctx.subscribe(seen.append)
    backend.change_profile("u2", approval_status="approved")
    ctx.apply_profile_changes()
    assert ctx.snapshot is before
    assert seen == []


async def test_deleted_profile_degrades():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()

    row = backend.profiles.pop("u1")
    backend.broadcaster.publish(ChangeEvent(table="profiles", event_type="DELETE", old=row, new=None))
    ctx.apply_profile_changes()
    snap = ctx.snapshot
    assert snap.user.id == "u1"
    assert resolve_access(snap.user, snap.profile) is AccessLevel.PROFILE_UNAVAILABLE


async def test_profile_change_wins_over_fetch_in_flight():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1", approval="pending")
    client = FakeClient(make_session("u1"))
    ctx = SessionContext(client, backend)
    await ctx.start()

    # a refetch that read the pending row is still on its way back
    gate = asyncio.Event()
    backend.gates["u1"] = gate
    client.emit(AuthEvent.TOKEN_REFRESHED, make_session("u1"))
    pending = dict(backend.profiles["u1"])

    backend.change_profile("u1", approval_status="approved")
    ctx.apply_profile_changes()
    backend.profiles["u1"] = pending
    gate.set()
    await ctx.settle()
    assert ctx.snapshot.profile["approval_status"] == "approved"


async def test_close_stops_listening_for_profile_changes():
    backend = FakeBackend()
    backend.profiles["u1"] = profile("u1")
    ctx = SessionContext(FakeClient(make_session("u1")), backend)
    await ctx.start()
    ctx.close()
    assert backend.broadcaster.subscribers == []
