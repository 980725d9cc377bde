"""
Tests for User Service
Tests for the in-memory and Firestore user directories

Test Cases:
- TC-SVC-01: Get user by ID (exists / not exists)
- TC-SVC-02: Get user by username
- TC-SVC-03: Get user by email, case-insensitive
- TC-SVC-04: Email-or-username resolution
- TC-SVC-05: Create user, duplicate rejected
- TC-SVC-06: Update last login timestamp
- TC-SVC-07: Firestore lookup by username
- TC-SVC-08: Firestore lookup by email uses the lower-cased address index
- TC-SVC-09: Firestore create stores the address index
"""

import pytest
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

from app.models.user import UserAccount, UserEmail
from app.services.user_service import (
    FirestoreUserDirectory,
    InMemoryUserDirectory,
    UserAlreadyExistsError,
    UserNotFoundError,
)


async def async_generator(items: List):
    """Create an async generator from a list."""
    for item in items:
        yield item


@pytest.fixture
def mock_firestore_client():
    """Mock Firestore client for unit tests.

    The Firestore AsyncClient has sync methods for collection/where
    but async generators for stream().
    """
    client = MagicMock()
    collection = MagicMock()
    client.collection.return_value = collection
    return client


@pytest.fixture
def sample_user_doc() -> Dict[str, Any]:
    """Sample Firestore user document."""
    return {
        "username": "carol",
        "emails": [{"address": "carol@example.com", "verified": True}],
        "email_addresses": ["carol@example.com"],
        "password_bcrypt": "$2b$04$abc",
        "oauth_services": [],
        "language": "en",
        "last_login_at": None,
    }


class TestInMemoryLookups:
    """Tests for InMemoryUserDirectory lookups."""

    @pytest.mark.asyncio
    async def test_tc_svc_01_get_user_by_id(self, users, alice):
        """TC-SVC-01: Get user by ID (exists / not exists)."""
        user = await users.get_user_by_id(alice.user_id)

        assert user.username == "alice"
        assert await users.get_user_by_id("u-ghost") is None

    @pytest.mark.asyncio
    async def test_tc_svc_02_get_user_by_username(self, users, bob):
        """TC-SVC-02: Get user by username."""
        user = await users.get_user_by_username("bob")

        assert user.user_id == bob.user_id
        assert await users.get_user_by_username("Bob") is None

    @pytest.mark.asyncio
    async def test_tc_svc_03_get_user_by_email(self, users, alice):
        """TC-SVC-03: Get user by email, case-insensitive."""
        assert (await users.get_user_by_email("Alice@Example.com")).user_id == alice.user_id
        assert (await users.get_user_by_email("alice@old.example.com")).user_id == alice.user_id
        assert await users.get_user_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_tc_svc_04_email_or_username(self, users, alice):
        """TC-SVC-04: Email-or-username resolution."""
        assert (await users.get_user_by_email_or_username("alice")).user_id == alice.user_id
        assert (
            await users.get_user_by_email_or_username("alice@example.com")
        ).user_id == alice.user_id
        assert await users.get_user_by_email_or_username("alice@nowhere.test") is None


class TestInMemoryWrites:
    @pytest.mark.asyncio
    async def test_tc_svc_05_create_user(self):
        """TC-SVC-05: Create user, duplicate rejected."""
        directory = InMemoryUserDirectory()
        user = UserAccount(user_id="u-1", username="dave")

        await directory.create_user(user)

        assert (await directory.get_user_by_username("dave")).user_id == "u-1"
        with pytest.raises(UserAlreadyExistsError):
            await directory.create_user(user)

    @pytest.mark.asyncio
    async def test_tc_svc_06_update_last_login(self, users, alice):
        """TC-SVC-06: Update last login timestamp."""
        await users.update_last_login(alice.user_id)

        assert (await users.get_user_by_id(alice.user_id)).last_login_at is not None

        with pytest.raises(UserNotFoundError):
            await users.update_last_login("u-ghost")


class TestFirestoreUserDirectory:
    """Tests for FirestoreUserDirectory against a mocked client."""

    @pytest.mark.asyncio
    async def test_tc_svc_07_get_by_username(self, mock_firestore_client, sample_user_doc):
        """TC-SVC-07: Firestore lookup by username."""
        mock_doc = MagicMock()
        mock_doc.id = "u-carol"
        mock_doc.to_dict.return_value = sample_user_doc

        mock_query = MagicMock()
        mock_query.stream.return_value = async_generator([mock_doc])
        collection = mock_firestore_client.collection.return_value
        collection.where.return_value = mock_query

        directory = FirestoreUserDirectory(mock_firestore_client)
        user = await directory.get_user_by_username("carol")

        collection.where.assert_called_once_with("username", "==", "carol")
        assert user.user_id == "u-carol"
        assert user.verified_emails == ["carol@example.com"]
        assert user.has_password is True

    @pytest.mark.asyncio
    async def test_tc_svc_08_get_by_email(self, mock_firestore_client):
        """TC-SVC-08: Firestore lookup by email uses the lower-cased address index."""
        mock_query = MagicMock()
        mock_query.stream.return_value = async_generator([])
        collection = mock_firestore_client.collection.return_value
        collection.where.return_value = mock_query

        directory = FirestoreUserDirectory(mock_firestore_client)
        user = await directory.get_user_by_email("Carol@Example.com")

        collection.where.assert_called_once_with(
            "email_addresses", "array_contains", "carol@example.com"
        )
        assert user is None

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self, mock_firestore_client):
        snapshot = MagicMock()
        snapshot.exists = False
        doc_ref = MagicMock()
        doc_ref.get = AsyncMock(return_value=snapshot)
        mock_firestore_client.collection.return_value.document.return_value = doc_ref

        directory = FirestoreUserDirectory(mock_firestore_client)

        assert await directory.get_user_by_id("u-ghost") is None

    @pytest.mark.asyncio
    async def test_tc_svc_09_create_user(self, mock_firestore_client):
        """TC-SVC-09: Firestore create stores the address index."""
        snapshot = MagicMock()
        snapshot.exists = False
        doc_ref = MagicMock()
        doc_ref.get = AsyncMock(return_value=snapshot)
        doc_ref.set = AsyncMock()
        mock_firestore_client.collection.return_value.document.return_value = doc_ref

        directory = FirestoreUserDirectory(mock_firestore_client)
        await directory.create_user(
            UserAccount(
                user_id="u-erin",
                username="erin",
                emails=[UserEmail(address="Erin@Example.com", verified=True)],
            )
        )

        data = doc_ref.set.call_args[0][0]
        assert data["email_addresses"] == ["erin@example.com"]
        assert data["username"] == "erin"

        snapshot.exists = True
        with pytest.raises(UserAlreadyExistsError):
            await directory.create_user(UserAccount(user_id="u-erin"))
