"""Session Store - login tokens per user

Login tokens are stored hashed (SHA-256, base64). Each token may carry a
remembered second-factor authorization: until `two_factor_authorized_until`
the holder of the token on the same connection fingerprint is not asked for
a code again.

Firestore Schema (login_tokens collection, document id = user id):
{
    "user_id": "u1",
    "token_hashes": ["hbQ0...", ...],       # for lookup by token
    "tokens": [
        {
            "hashed_token": "hbQ0...",
            "when": "2026-01-15T12:00:00Z",
            "type": null,                   # or "personalAccessToken"
            "two_factor_authorized_until": null,
            "two_factor_authorized_hash": null
        }
    ]
}
"""

import asyncio
import base64
import copy
import hashlib
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from google.cloud.firestore_v1 import AsyncClient, async_transactional

from app.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

PERSONAL_ACCESS_TOKEN = "personalAccessToken"


def hash_login_token(token: str) -> str:
    """Hash a plaintext login token the way it is stored."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass
class LoginToken:
    hashed_token: str
    when: datetime
    type: Optional[str] = None
    two_factor_authorized_until: Optional[datetime] = None
    two_factor_authorized_hash: Optional[str] = None

    @property
    def is_personal_access_token(self) -> bool:
        return self.type == PERSONAL_ACCESS_TOKEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hashed_token": self.hashed_token,
            "when": self.when,
            "type": self.type,
            "two_factor_authorized_until": self.two_factor_authorized_until,
            "two_factor_authorized_hash": self.two_factor_authorized_hash,
        }

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "LoginToken":
        return cls(
            hashed_token=doc["hashed_token"],
            when=doc.get("when") or datetime.now(timezone.utc),
            type=doc.get("type"),
            two_factor_authorized_until=doc.get("two_factor_authorized_until"),
            two_factor_authorized_hash=doc.get("two_factor_authorized_hash"),
        )


@dataclass
class PruneResult:
    """Outcome of pruning: number of user records changed (0 or 1)."""

    modified_count: int


class SessionStore(ABC):
    """Login token persistence.

    Like the secret store, every mutation goes through one atomic
    `_mutate` over the user's token list.
    """

    @abstractmethod
    async def find_user_login_tokens(self, user_id: str) -> List[LoginToken]:
        """Return all login tokens of a user."""

    @abstractmethod
    async def find_user_id_by_token(self, hashed_token: str) -> Optional[str]:
        """Resolve a hashed token to its owner."""

    @abstractmethod
    async def _mutate(
        self, user_id: str, apply: Callable[[List[LoginToken]], T]
    ) -> T:
        """Atomically load the user's tokens, apply in place, persist."""

    async def find_login_token(
        self, user_id: str, hashed_token: str
    ) -> Optional[LoginToken]:
        for token in await self.find_user_login_tokens(user_id):
            if token.hashed_token == hashed_token:
                return token
        return None

    async def insert_login_token(
        self, user_id: str, token: Optional[str] = None, token_type: Optional[str] = None
    ) -> str:
        """Create a login token for a user.

        Returns:
            The plaintext token (only the hash is stored)
        """
        plaintext = token or secrets.token_urlsafe(32)
        login_token = LoginToken(
            hashed_token=hash_login_token(plaintext),
            when=datetime.now(timezone.utc),
            type=token_type,
        )

        def apply(tokens: List[LoginToken]) -> None:
            tokens.append(login_token)

        await self._mutate(user_id, apply)
        logger.debug("Login token created", user_id=user_id, token_type=token_type)
        return plaintext

    async def remove_login_token(self, user_id: str, hashed_token: str) -> bool:
        def apply(tokens: List[LoginToken]) -> bool:
            before = len(tokens)
            tokens[:] = [t for t in tokens if t.hashed_token != hashed_token]
            return len(tokens) != before

        return await self._mutate(user_id, apply)

    async def prune_login_tokens_except(
        self, user_id: str, keep_hashed_token: str
    ) -> PruneResult:
        """Remove every non personal-access token except `keep_hashed_token`."""

        def apply(tokens: List[LoginToken]) -> int:
            kept = [
                t
                for t in tokens
                if t.is_personal_access_token or t.hashed_token == keep_hashed_token
            ]
            removed = len(tokens) - len(kept)
            tokens[:] = kept
            return removed

        removed = await self._mutate(user_id, apply)
        if removed:
            logger.log_security_event(
                "login_tokens_pruned", user_id=user_id, removed=removed
            )
        return PruneResult(modified_count=1 if removed else 0)

    async def unset_login_tokens(self, user_id: str) -> int:
        """Remove every login token of a user, personal access tokens included."""

        def apply(tokens: List[LoginToken]) -> int:
            removed = len(tokens)
            tokens.clear()
            return removed

        return await self._mutate(user_id, apply)

    async def remember_two_factor(
        self,
        user_id: str,
        hashed_token: str,
        until: datetime,
        fingerprint_hash: str,
    ) -> bool:
        """Record a trusted window on one login token.

        Returns:
            True if the token exists and was updated
        """

        def apply(tokens: List[LoginToken]) -> bool:
            for token in tokens:
                if token.hashed_token == hashed_token:
                    token.two_factor_authorized_until = until
                    token.two_factor_authorized_hash = fingerprint_hash
                    return True
            return False

        return await self._mutate(user_id, apply)


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._tokens: Dict[str, List[LoginToken]] = {}
        self._lock = asyncio.Lock()

    async def find_user_login_tokens(self, user_id: str) -> List[LoginToken]:
        async with self._lock:
            return copy.deepcopy(self._tokens.get(user_id, []))

    async def find_user_id_by_token(self, hashed_token: str) -> Optional[str]:
        async with self._lock:
            for user_id, tokens in self._tokens.items():
                if any(t.hashed_token == hashed_token for t in tokens):
                    return user_id
        return None

    async def _mutate(
        self, user_id: str, apply: Callable[[List[LoginToken]], T]
    ) -> T:
        async with self._lock:
            tokens = copy.deepcopy(self._tokens.get(user_id, []))
            result = apply(tokens)
            self._tokens[user_id] = tokens
            return result


class FirestoreSessionStore(SessionStore):
    def __init__(self, client: AsyncClient, collection_name: str = "login_tokens"):
        self.client = client
        self.collection = client.collection(collection_name)

    @staticmethod
    def _tokens_from_doc(data: Optional[Dict[str, Any]]) -> List[LoginToken]:
        if not data:
            return []
        return [
            LoginToken.from_dict(entry)
            for entry in data.get("tokens") or []
            if isinstance(entry, dict) and entry.get("hashed_token")
        ]

    async def find_user_login_tokens(self, user_id: str) -> List[LoginToken]:
        snapshot = await self.collection.document(user_id).get()
        if not snapshot.exists:
            return []
        return self._tokens_from_doc(snapshot.to_dict())

    async def find_user_id_by_token(self, hashed_token: str) -> Optional[str]:
        query = self.collection.where("token_hashes", "array_contains", hashed_token)
        async for doc in query.stream():
            return doc.id
        return None

    async def _mutate(
        self, user_id: str, apply: Callable[[List[LoginToken]], T]
    ) -> T:
        doc_ref = self.collection.document(user_id)

        @async_transactional
        async def update_in_transaction(transaction, doc_ref):
            snapshot = await doc_ref.get(transaction=transaction)
            tokens = self._tokens_from_doc(snapshot.to_dict() if snapshot.exists else None)
            result = apply(tokens)
            transaction.set(
                doc_ref,
                {
                    "user_id": user_id,
                    "token_hashes": [t.hashed_token for t in tokens],
                    "tokens": [t.to_dict() for t in tokens],
                },
            )
            return result

        try:
            transaction = self.client.transaction()
            return await update_in_transaction(transaction, doc_ref)
        except Exception as e:
            logger.error("Login token update failed", user_id=user_id, error=str(e))
            raise
