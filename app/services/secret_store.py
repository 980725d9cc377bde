"""Secret Store - per-user second-factor state

Every mutation runs as a single atomic read-modify-write:
- InMemorySecretStore: one asyncio lock around the update
- FirestoreSecretStore: one Firestore transaction per update

So a cancelled call never leaves a half-applied record, two confirmations
racing on different temp secrets cannot both succeed, and a backup hash can
be consumed at most once.

Firestore Schema (two_factor collection, document id = user id):
{
    "user_id": "u1",
    "enabled": true,
    "secret": "JBSWY3DPEHPK3PXP...",
    "temp_secret": null,
    "backup_code_hashes": ["$2b$12$...", ...],
    "failed_attempts": 0,
    "enrolled_at": "2026-01-15T12:00:00Z",
    "email_enabled": false,
    "email_code": null
}
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, TypeVar

from google.cloud.firestore_v1 import AsyncClient, async_transactional

from app.models.two_factor import EmailCode, UserSecondFactor
from app.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SecretStore(ABC):
    """Contract for second-factor persistence.

    Subclasses provide `get` and `_mutate`; every operation below is built on
    `_mutate`, which applies a function to the current record atomically.
    """

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserSecondFactor]:
        """Return the user's record, or None if the user never touched 2FA."""

    @abstractmethod
    async def _mutate(
        self, user_id: str, apply: Callable[[UserSecondFactor], T]
    ) -> T:
        """Atomically load (or create) the record, apply, persist, return."""

    async def get_or_default(self, user_id: str) -> UserSecondFactor:
        record = await self.get(user_id)
        return record if record is not None else UserSecondFactor(user_id=user_id)

    async def set_temp_secret(self, user_id: str, secret: str) -> None:
        """Begin or restart enrollment. `enabled`/`secret` are untouched."""

        def apply(record: UserSecondFactor) -> None:
            record.temp_secret = secret

        await self._mutate(user_id, apply)

    async def confirm_enrollment(
        self, user_id: str, secret: str, backup_hashes: List[str]
    ) -> bool:
        """Promote `secret` to the active secret, compare-and-set style.

        Succeeds only while `secret` is still the pending temp secret. Sets
        enabled, secret and backup hashes together and clears temp_secret.

        Returns:
            True if applied, False if the temp secret changed meanwhile
        """

        def apply(record: UserSecondFactor) -> bool:
            if not record.temp_secret or record.temp_secret != secret:
                return False
            record.enabled = True
            record.secret = secret
            record.temp_secret = None
            record.backup_code_hashes = list(backup_hashes)
            record.failed_attempts = 0
            record.enrolled_at = datetime.now(timezone.utc)
            return True

        return await self._mutate(user_id, apply)

    async def disable(self, user_id: str) -> bool:
        """Clear the TOTP factor entirely.

        Returns:
            True if a record was modified (TOTP was enabled or pending)
        """

        def apply(record: UserSecondFactor) -> bool:
            modified = bool(
                record.enabled
                or record.secret
                or record.temp_secret
                or record.backup_code_hashes
            )
            record.enabled = False
            record.secret = None
            record.temp_secret = None
            record.backup_code_hashes = []
            record.enrolled_at = None
            return modified

        return await self._mutate(user_id, apply)

    async def replace_backup_hashes(self, user_id: str, hashes: List[str]) -> None:
        """Swap the whole backup hash list in one write."""

        def apply(record: UserSecondFactor) -> None:
            record.backup_code_hashes = list(hashes)

        await self._mutate(user_id, apply)

    async def consume_backup_hash(self, user_id: str, hash_value: str) -> bool:
        """Remove one matching hash.

        Returns:
            True if the hash was present and removed, False otherwise
        """

        def apply(record: UserSecondFactor) -> bool:
            if hash_value not in record.backup_code_hashes:
                return False
            record.backup_code_hashes.remove(hash_value)
            return True

        return await self._mutate(user_id, apply)

    async def increment_failed_attempts(self, user_id: str) -> int:
        def apply(record: UserSecondFactor) -> int:
            record.failed_attempts += 1
            return record.failed_attempts

        return await self._mutate(user_id, apply)

    async def reset_failed_attempts(self, user_id: str) -> None:
        def apply(record: UserSecondFactor) -> None:
            record.failed_attempts = 0

        await self._mutate(user_id, apply)

    async def set_email_enabled(self, user_id: str, enabled: bool) -> None:
        def apply(record: UserSecondFactor) -> None:
            record.email_enabled = enabled
            if not enabled:
                record.email_code = None

        await self._mutate(user_id, apply)

    async def set_email_code(self, user_id: str, email_code: EmailCode) -> None:
        def apply(record: UserSecondFactor) -> None:
            record.email_code = email_code

        await self._mutate(user_id, apply)

    async def remove_email_code(self, user_id: str) -> None:
        def apply(record: UserSecondFactor) -> None:
            record.email_code = None

        await self._mutate(user_id, apply)

    async def remove_expired_email_code(self, user_id: str, now: datetime) -> bool:
        """Drop the pending email code if it has expired.

        Returns:
            True if an expired code was removed
        """

        def apply(record: UserSecondFactor) -> bool:
            if record.email_code is not None and record.email_code.is_expired(now):
                record.email_code = None
                return True
            return False

        return await self._mutate(user_id, apply)


class InMemorySecretStore(SecretStore):
    """Process-local store. Records are copied in and out so callers never
    hold a reference to stored state."""

    def __init__(self):
        self._records: Dict[str, UserSecondFactor] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[UserSecondFactor]:
        async with self._lock:
            record = self._records.get(user_id)
            return copy.deepcopy(record) if record is not None else None

    async def _mutate(
        self, user_id: str, apply: Callable[[UserSecondFactor], T]
    ) -> T:
        async with self._lock:
            current = self._records.get(user_id)
            record = (
                copy.deepcopy(current)
                if current is not None
                else UserSecondFactor(user_id=user_id)
            )
            result = apply(record)
            self._records[user_id] = record
            return result

    def put(self, record: UserSecondFactor) -> None:
        """Seed a record directly (fixtures, migrations)."""
        self._records[record.user_id] = copy.deepcopy(record)


class FirestoreSecretStore(SecretStore):
    """Firestore-backed store; each mutation is one async transaction."""

    def __init__(self, client: AsyncClient, collection_name: str = "two_factor"):
        self.client = client
        self.collection = client.collection(collection_name)

    async def get(self, user_id: str) -> Optional[UserSecondFactor]:
        snapshot = await self.collection.document(user_id).get()
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        data.setdefault("user_id", user_id)
        return UserSecondFactor.from_firestore(data)

    async def _mutate(
        self, user_id: str, apply: Callable[[UserSecondFactor], T]
    ) -> T:
        doc_ref = self.collection.document(user_id)

        @async_transactional
        async def update_in_transaction(transaction, doc_ref):
            snapshot = await doc_ref.get(transaction=transaction)
            if snapshot.exists:
                data = snapshot.to_dict() or {}
                data.setdefault("user_id", user_id)
                record = UserSecondFactor.from_firestore(data)
            else:
                record = UserSecondFactor(user_id=user_id)

            result = apply(record)
            transaction.set(doc_ref, record.to_dict())
            return result

        try:
            transaction = self.client.transaction()
            return await update_in_transaction(transaction, doc_ref)
        except Exception as e:
            logger.error(
                "Second-factor store update failed", user_id=user_id, error=str(e)
            )
            raise
