from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import DocumentStore


@pytest.fixture
def db():
    return mongomock.MongoClient()["meat_admin_test"]


@pytest.fixture
def store(db):
    return DocumentStore(db, poll_interval=0.01)


@pytest.fixture
def now():
    # a Saturday
    return datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(store):
    from main import app

    app.state.store = store
    with TestClient(app) as c:
        yield c
    app.state.store = None


@pytest.fixture
def admin_headers(client):
    response = client.post("/auth/signup", json={"email": "admin@example.com", "password": "secret123"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}
