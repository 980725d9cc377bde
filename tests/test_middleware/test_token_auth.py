"""
Tests for Login Token Authentication Middleware

Test Cases:
- TC-AUTH-01: Bypass paths are reachable without credentials
- TC-AUTH-02: Missing headers are rejected with 401
- TC-AUTH-03: A token of another user is rejected
- TC-AUTH-04: A valid token exposes user id and token on request.state
- TC-AUTH-05: Connection info carries headers, address and token
"""

import asyncio

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from app.middleware.token_auth import (
    TokenAuthMiddleware,
    get_call_context,
    get_connection_info,
)
from app.services.session_store import InMemorySessionStore


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def client(sessions):
    app = FastAPI()
    app.add_middleware(TokenAuthMiddleware, sessions=sessions, bypass_paths=["/health"])

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/whoami")
    async def whoami(request: Request, context=Depends(get_call_context)):
        connection = get_connection_info(request)
        return {
            "user_id": context.user_id,
            "auth_token": connection.auth_token,
            "user_agent": connection.user_agent,
        }

    return TestClient(app)


class TestTokenAuthMiddleware:
    def test_tc_auth_01_bypass(self, client):
        """TC-AUTH-01: Bypass paths are reachable without credentials."""
        assert client.get("/health").status_code == 200

    def test_tc_auth_02_missing_headers(self, client):
        """TC-AUTH-02: Missing headers are rejected with 401."""
        response = client.get("/whoami")

        assert response.status_code == 401
        assert response.json() == {
            "error": "not-authorized",
            "reason": "You must be logged in to do this.",
        }

    def test_tc_auth_03_foreign_token(self, client, sessions):
        """TC-AUTH-03: A token of another user is rejected."""
        token = asyncio.run(sessions.insert_login_token("u-bob"))

        response = client.get(
            "/whoami", headers={"X-User-Id": "u-alice", "X-Auth-Token": token}
        )

        assert response.status_code == 401

    def test_tc_auth_04_valid_token(self, client, sessions):
        """TC-AUTH-04: A valid token exposes user id and token on request.state."""
        token = asyncio.run(sessions.insert_login_token("u-alice"))

        response = client.get(
            "/whoami",
            headers={
                "X-User-Id": "u-alice",
                "X-Auth-Token": token,
                "User-Agent": "chat-client/2.0",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "u-alice"
        assert body["auth_token"] == token

    def test_tc_auth_05_connection_info(self, client, sessions):
        """TC-AUTH-05: Connection info carries headers, address and token."""
        token = asyncio.run(sessions.insert_login_token("u-alice"))

        response = client.get(
            "/whoami",
            headers={
                "X-User-Id": "u-alice",
                "X-Auth-Token": token,
                "User-Agent": "chat-client/2.0",
            },
        )

        assert response.json()["user_agent"] == "chat-client/2.0"
