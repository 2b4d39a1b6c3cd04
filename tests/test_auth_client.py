import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from classroom.auth_client import AuthClient, AuthEvent, ClientRegistry

from conftest import PASSWORD

pytestmark = pytest.mark.anyio


def expire(session):
    return dataclasses.replace(session, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))


async def test_sign_in_and_out_emit_events(backend):
    await backend.sign_up("a@example.com", PASSWORD)
    client = AuthClient(backend)
    events = []
    client.on_session_change(lambda event, session: events.append((event, session and session.user.email)))

    assert await client.get_session() is None
    await client.sign_in("a@example.com", PASSWORD)
    await client.sign_out()
    # already signed out, nothing to announce
    await client.sign_out()

    assert events == [(AuthEvent.SIGNED_IN, "a@example.com"), (AuthEvent.SIGNED_OUT, None)]


async def test_expired_session_is_refreshed(backend):
    client = AuthClient(backend)
    session = await client.sign_up("a@example.com", PASSWORD, {"full_name": "A"})
    client._session = expire(session)

    events = []
    client.on_session_change(lambda event, s: events.append(event))
    fresh = await client.get_session()

    assert fresh is not None and not fresh.expired()
    assert fresh.user.id == session.user.id
    assert events == [AuthEvent.TOKEN_REFRESHED]


async def test_failed_refresh_signs_out(backend):
    client = AuthClient(backend)
    session = await client.sign_up("a@example.com", PASSWORD)
    client._session = dataclasses.replace(expire(session), refresh_token="garbage")

    events = []
    client.on_session_change(lambda event, s: events.append(event))
    assert await client.get_session() is None
    assert events == [AuthEvent.SIGNED_OUT]


async def test_unsubscribe(backend):
    client = AuthClient(backend)
    events = []
    off = client.on_session_change(lambda event, s: events.append(event))
    off()
    await client.sign_up("a@example.com", PASSWORD)
    assert events == []


def test_registry_add_get_close(backend):
    registry = ClientRegistry(backend)
    entry = registry.build()
    assert len(registry) == 0
    registry.add(entry)

    assert registry.get(entry.id) is entry
    assert registry.get("unknown") is None
    assert registry.get(None) is None
    assert len(registry) == 1

    registry.close()
    assert len(registry) == 0


def test_registry_drops_idle_browsers(backend):
    registry = ClientRegistry(backend, ttl_minutes=0)
    entry = registry.build()
    registry.add(entry)
    assert registry.get(entry.id) is None
    assert len(registry) == 0


def test_adding_a_browser_sweeps_idle_ones(backend):
    registry = ClientRegistry(backend, ttl_minutes=0)
    for _ in range(20):
        registry.add(registry.build())
        # everything stored before this one had already expired
        assert len(registry) == 1

    assert registry.sweep() == 1
    assert len(registry) == 0


def test_sweep_keeps_live_browsers(backend):
    registry = ClientRegistry(backend)
    entry = registry.build()
    registry.add(entry)
    assert registry.sweep() == 0
    assert registry.get(entry.id) is entry
