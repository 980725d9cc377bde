"""Backup Code Generation

Backup codes are one-time recovery codes issued in batches of 12.

Format: XXXX-XXXX, 8 characters drawn from a 32-symbol alphabet without
ambiguous characters (no 0/O, 1/I), so 40 bits per code.

Hashing: bcrypt over the normalized code (dashes and whitespace removed,
upper-cased), salted per code. A submitted code is matched by checking it
against every stored hash; the matched stored hash is what gets removed.
"""

import re
import secrets
from typing import Iterable, List, Optional

import bcrypt

from app.models.two_factor import BackupCodeBatch
from app.utils.logger import get_logger

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 12
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_HASH_ROUNDS = 12

_SEPARATORS = re.compile(r"[\s-]")


def normalize_backup_code(code: str) -> str:
    """Remove separators and upper-case ("a3f9-k2h7" -> "A3F9K2H7")."""
    return _SEPARATORS.sub("", code or "").upper()


def hash_backup_code(code: str, rounds: int = BACKUP_CODE_HASH_ROUNDS) -> str:
    """Hash a backup code for storage.

    Args:
        code: Backup code in any accepted spelling
        rounds: bcrypt work factor

    Returns:
        bcrypt hash string (includes salt)
    """
    return bcrypt.hashpw(
        normalize_backup_code(code).encode("utf-8"), bcrypt.gensalt(rounds=rounds)
    ).decode("utf-8")


def match_backup_code(code: str, stored_hashes: Iterable[str]) -> Optional[str]:
    """Return the stored hash matching `code`, or None.

    Every stored hash is checked, also after a match, so timing does not
    depend on the position of the matching code. Malformed stored hashes
    never match.
    """
    normalized = normalize_backup_code(code).encode("utf-8")
    matched = None
    for stored in stored_hashes:
        try:
            if bcrypt.checkpw(normalized, stored.encode("utf-8")) and matched is None:
                matched = stored
        except (ValueError, TypeError):
            continue
    return matched


def looks_like_backup_code(code: str) -> bool:
    """True if the normalized code has the backup code length and alphabet."""
    normalized = normalize_backup_code(code)
    return len(normalized) == BACKUP_CODE_LENGTH and all(
        c in BACKUP_CODE_CHARSET for c in normalized
    )


class BackupCodeGenerator:
    """Produces fresh batches of backup codes and their hashes."""

    def __init__(
        self, count: int = BACKUP_CODE_COUNT, rounds: int = BACKUP_CODE_HASH_ROUNDS
    ):
        self.count = count
        self.rounds = rounds

    def _new_code(self) -> str:
        chars = "".join(
            secrets.choice(BACKUP_CODE_CHARSET) for _ in range(BACKUP_CODE_LENGTH)
        )
        return f"{chars[:4]}-{chars[4:]}"

    def generate(self) -> BackupCodeBatch:
        """Generate a batch of unique codes.

        Returns:
            BackupCodeBatch with plaintext codes and hashes in the same order
        """
        codes: List[str] = []
        while len(codes) < self.count:
            code = self._new_code()
            if code not in codes:
                codes.append(code)

        logger.info("Generated backup codes", count=len(codes))

        return BackupCodeBatch(
            plaintext_codes=codes,
            hashes=[hash_backup_code(code, self.rounds) for code in codes],
        )
