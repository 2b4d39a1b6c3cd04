import os

# keep the import-time engine off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from classroom.auth_client import ClientRegistry
from classroom.backend import Backend
from classroom.db import init_db, make_engine
from classroom.main import app

ADMIN_EMAIL = "prof@example.com"
PASSWORD = "secret123"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def backend(session_factory):
    return Backend(session_factory, admin_email=ADMIN_EMAIL)


@pytest.fixture
def client(backend):
    app.state.backend = backend
    app.state.clients = ClientRegistry(backend)
    with TestClient(app) as c:
        yield c
    app.state.backend = None
    app.state.clients = None


def sign_up(client, email, full_name="Test Student", password=PASSWORD):
    r = client.post("/auth/signup", json={"email": email, "password": password, "full_name": full_name})
    assert r.status_code == 200, r.text
    return r.json()


def sign_in(client, email, password=PASSWORD):
    r = client.post("/auth/signin", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()


def sign_out(client):
    r = client.post("/auth/signout", follow_redirects=False)
    assert r.status_code == 303


def switch_browser(client, cookies=None):
    """Continue as another browser (a fresh one by default); returns the jar being left."""
    left = httpx.Cookies(client.cookies)
    client.cookies = cookies if cookies is not None else httpx.Cookies()
    return left
