"""User Service - user directory lookups

The chat server owns user accounts. The two-factor subsystem only needs to:
- Look users up by ID or username
- Record the last login
- Create accounts (seeding, local development)
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, Optional

from google.cloud.firestore_v1 import AsyncClient

from app.models.user import UserAccount
from app.utils.logger import get_logger

logger = get_logger(__name__)


class UserNotFoundError(Exception):
    """Raised when a user is not found."""

    pass


class UserAlreadyExistsError(Exception):
    """Raised when trying to create a user that already exists."""

    pass


class UserDirectory:
    """Interface of the user directory."""

    async def get_user_by_id(self, user_id: str) -> Optional[UserAccount]:
        raise NotImplementedError

    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        raise NotImplementedError

    async def create_user(self, user: UserAccount) -> UserAccount:
        raise NotImplementedError

    async def update_last_login(self, user_id: str) -> None:
        raise NotImplementedError

    async def get_user_by_email_or_username(
        self, email_or_username: str
    ) -> Optional[UserAccount]:
        """Resolve a login identifier: addresses contain '@', usernames don't."""
        if "@" in email_or_username:
            return await self.get_user_by_email(email_or_username)
        return await self.get_user_by_username(email_or_username)

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        raise NotImplementedError


class InMemoryUserDirectory(UserDirectory):
    def __init__(self):
        self._users: Dict[str, UserAccount] = {}
        self._lock = asyncio.Lock()

    async def get_user_by_id(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        for user in self._users.values():
            if user.username == username:
                return copy.deepcopy(user)
        return None

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        wanted = email.lower()
        for user in self._users.values():
            if any(e.address.lower() == wanted for e in user.emails):
                return copy.deepcopy(user)
        return None

    def put(self, user: UserAccount) -> None:
        """Seed an account directly (fixtures, local development)."""
        self._users[user.user_id] = copy.deepcopy(user)

    async def create_user(self, user: UserAccount) -> UserAccount:
        async with self._lock:
            if user.user_id in self._users:
                raise UserAlreadyExistsError(f"User {user.user_id} already exists")
            self._users[user.user_id] = copy.deepcopy(user)
        logger.info("User created", user_id=user.user_id)
        return user

    async def update_last_login(self, user_id: str) -> None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            user.last_login_at = datetime.now(timezone.utc)
        logger.debug("Last login updated", user_id=user_id)


class FirestoreUserDirectory(UserDirectory):
    def __init__(self, client: AsyncClient, collection_name: str = "users"):
        self.collection = client.collection(collection_name)

    async def _first(self, query) -> Optional[UserAccount]:
        async for doc in query.stream():
            doc_data = doc.to_dict()
            if doc_data:
                doc_data["user_id"] = doc_data.get("user_id", doc.id)
                return UserAccount.from_firestore(doc_data)
        return None

    async def get_user_by_id(self, user_id: str) -> Optional[UserAccount]:
        snapshot = await self.collection.document(user_id).get()
        if not snapshot.exists:
            logger.debug("User not found by ID", user_id=user_id)
            return None
        doc_data = snapshot.to_dict() or {}
        doc_data["user_id"] = doc_data.get("user_id", user_id)
        return UserAccount.from_firestore(doc_data)

    async def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        user = await self._first(self.collection.where("username", "==", username))
        if user is None:
            logger.debug("User not found by username", username=username)
        return user

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        # Only addresses in stored form (lower-case) are matched
        return await self._first(
            self.collection.where("email_addresses", "array_contains", email.lower())
        )

    async def create_user(self, user: UserAccount) -> UserAccount:
        doc_ref = self.collection.document(user.user_id)
        snapshot = await doc_ref.get()
        if snapshot.exists:
            raise UserAlreadyExistsError(f"User {user.user_id} already exists")

        data = user.to_dict()
        data["email_addresses"] = [e.address.lower() for e in user.emails]
        await doc_ref.set(data)
        logger.info("User created", user_id=user.user_id)
        return user

    async def update_last_login(self, user_id: str) -> None:
        await self.collection.document(user_id).update(
            {
                "last_login_at": datetime.now(timezone.utc),
            }
        )
        logger.debug("Last login updated", user_id=user_id)
