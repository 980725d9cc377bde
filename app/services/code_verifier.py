"""Code Verifier - checks a submitted code against TOTP and backup codes

Verification is a yes/no outcome. Wrong, malformed and expired codes are
plain failures, never exceptions.

Timing: the TOTP path and the backup path are both evaluated for every code
shaped like a backup code, and such a code is checked against every stored
bcrypt hash, so response time does not reveal which path or which stored
code matched. Codes of any other shape never reach bcrypt.
"""

from datetime import datetime, timezone
from typing import Optional

import bcrypt

from app.config import Settings, get_settings
from app.models.two_factor import EmailCode, VerificationRequest, VerificationResult
from app.services.backup_codes import looks_like_backup_code, match_backup_code
from app.services.secret_store import SecretStore
from app.services.totp import normalize_totp_code, verify_totp_code
from app.utils.logger import get_logger

logger = get_logger(__name__)


class CodeVerifier:
    """Verifies second-factor codes and consumes matched backup codes."""

    def __init__(self, store: SecretStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    @property
    def window(self) -> int:
        return self.settings.two_factor_max_delta

    def _match_backup_hash(self, code: str, backup_hashes) -> Optional[str]:
        if not backup_hashes or not looks_like_backup_code(code):
            return None
        return match_backup_code(code, backup_hashes)

    def verify(self, request: VerificationRequest) -> VerificationResult:
        """Check a code against the live secret and the backup hashes.

        `temp_secret` is ignored here: a pending secret is never trusted for
        login or sensitive actions (see `verify_enrollment`).

        Returns:
            VerificationResult; when a backup code matched, its hash is set
            and the caller must consume it
        """
        code = request.submitted_code or ""

        totp_ok = False
        if request.secret:
            totp_ok = verify_totp_code(request.secret, code, window=self.window)

        matched_hash = self._match_backup_hash(code, request.backup_hashes)

        if totp_ok:
            return VerificationResult(success=True)
        if matched_hash is not None:
            return VerificationResult(success=True, matched_backup_hash=matched_hash)
        return VerificationResult(success=False)

    def verify_enrollment(self, request: VerificationRequest) -> bool:
        """Check a code against the pending temp secret only.

        The active secret and backup codes are never consulted, so a pending
        enrollment has to be proven against the new seed.
        """
        if not request.temp_secret:
            return False
        return verify_totp_code(
            request.temp_secret, request.submitted_code or "", window=self.window
        )

    def verify_email_code(
        self, email_code: Optional[EmailCode], code: str, now: Optional[datetime] = None
    ) -> bool:
        """Check a code against a pending email challenge.

        Expired challenges fail before any hash comparison.
        """
        if email_code is None:
            return False

        now = now or datetime.now(timezone.utc)
        if email_code.is_expired(now):
            logger.debug("Email code expired")
            return False

        normalized = normalize_totp_code(code)
        if not normalized:
            return False

        try:
            return bcrypt.checkpw(
                normalized.encode("utf-8"), email_code.code_hash.encode("utf-8")
            )
        except ValueError:
            logger.warning("Stored email code hash is malformed")
            return False

    async def check_user_code(self, user_id: str, code: str) -> bool:
        """Verify a code for an enrolled user and apply the side effects.

        On success a matched backup hash is consumed and the failed attempt
        counter is reset. A backup code that was consumed concurrently by
        another request counts as a failure.

        Returns:
            True if the code was accepted
        """
        record = await self.store.get(user_id)
        if record is None or not record.enabled or not record.secret:
            return False

        result = self.verify(
            VerificationRequest(
                user_id=user_id,
                submitted_code=code,
                secret=record.secret,
                backup_hashes=record.backup_code_hashes,
            )
        )
        if not result.success:
            return False

        if result.matched_backup_hash is not None:
            consumed = await self.store.consume_backup_hash(
                user_id, result.matched_backup_hash
            )
            if not consumed:
                logger.log_security_event(
                    "backup_code_replay", user_id=user_id, success=False
                )
                return False
            logger.log_security_event("backup_code_used", user_id=user_id)

        if record.failed_attempts:
            await self.store.reset_failed_attempts(user_id)
        return True
