"""Shared fixtures. The server is pointed at a throwaway data directory before import."""

import os
import tempfile
import uuid

# Setup environment for testing
os.environ["DEVICEPAIR_DATA_DIR"] = tempfile.mkdtemp()
os.environ["DEVICEPAIR_DB_PATH"] = os.path.join(os.environ["DEVICEPAIR_DATA_DIR"], "test.db")
os.environ["DEVICEPAIR_ADMIN_KEY"] = "test-admin-key"
os.environ["DEVICEPAIR_LINK_MAX_ATTEMPTS"] = "3"
os.environ["DEVICEPAIR_CLEANUP_INTERVAL_SECONDS"] = "0"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from server.database import engine, init_db  # noqa: E402
from server.main import app  # noqa: E402
from server.utils.security import create_session_token  # noqa: E402

init_db()


def web_headers(user_id: str, email: str | None = None) -> dict:
    token = create_session_token(user_id, email or f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


def new_user() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def user():
    """A fresh web user id and its session headers."""
    user_id = new_user()
    return user_id, web_headers(user_id)


@pytest.fixture
def paired(client, user):
    """Register, link and exchange one device. Returns (device_id, token, user_id, headers)."""
    user_id, headers = user
    r = client.post("/api/v1/devices/register", json={"deviceFingerprint": "fp-test"})
    assert r.status_code == 200, r.text
    reg = r.json()

    r = client.post("/api/v1/devices/link", json={"code": reg["code"]}, headers=headers)
    assert r.status_code == 200, r.text

    r = client.post(
        "/api/v1/devices/exchange",
        json={"deviceId": reg["deviceId"], "code": reg["code"], "deviceFingerprint": "fp-test"},
    )
    assert r.status_code == 200, r.text
    return reg["deviceId"], r.json()["token"], user_id, headers


@pytest.fixture
def make_headers():
    return web_headers
