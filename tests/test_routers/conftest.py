"""
HTTP fixtures: the full application over in-memory services.
"""
import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from tests.conftest import ALICE_PASSWORD, password_digest


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def login_as(client):
    """Log in through the API and return the auth headers for the session."""

    def login(code=None, user="alice", password=ALICE_PASSWORD):
        body = {"user": user, "password": password_digest(password)}
        if code:
            body["totp"] = {"code": code}
        response = client.post("/api/v1/login", json=body)
        assert response.status_code == 200, response.json()
        data = response.json()
        return {"X-User-Id": data["user_id"], "X-Auth-Token": data["token"]}

    return login


@pytest.fixture
def alice_headers(login_as, alice):
    return login_as()
