import os
import sys
import tempfile
from uuid import uuid4

import pytest

_DATA_DIR = tempfile.mkdtemp(prefix="fellowship-tests-")
os.environ["DATABASE_PATH"] = os.path.join(_DATA_DIR, "fellowship.sqlite3")
os.environ["MEMORY_DB_PATH"] = os.path.join(_DATA_DIR, "memory.sqlite3")
os.environ["UPLOAD_DIR"] = os.path.join(_DATA_DIR, "uploads")
os.environ["AUDIT_LOG_MAX_ENTRIES"] = "100000"
os.environ["ADMIN_EMAIL"] = "admin@fellowship.test"
os.environ["ADMIN_PASSWORD"] = "admin-pass-123"
for _name in ("OPENAI_API_KEY", "OPENAI_API_KEY_FILE", "FIREBASE_CREDENTIALS_PATH", "SMTP_HOST"):
    os.environ.pop(_name, None)

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient  # noqa: E402

from fellowship.main import app  # noqa: E402
from fellowship.services.user_store import user_store  # noqa: E402

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]
DEFAULT_PASSWORD = "member-pass-123"


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


def login(client, email: str, password: str) -> dict:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def make_user(client):
    def _make(role: str = "member", approved: bool = True, name: str = ""):
        email = f"{role}_{uuid4().hex[:8]}@fellowship.test"
        user = user_store.create_user(
            email=email,
            password=DEFAULT_PASSWORD,
            name=name or f"{role.title()} {uuid4().hex[:4]}",
            role=role,
            is_approved=approved,
        )
        if not approved:
            return user, {}
        return user, login(client, email, DEFAULT_PASSWORD)

    return _make


@pytest.fixture
def admin_headers(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
