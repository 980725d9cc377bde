"""Enrollment Flow - TOTP enrollment, disable and backup code lifecycle

States:
    Unenrolled --begin--> PendingSecret --confirm--> Enrolled
    Enrolled --disable--> Unenrolled
    Enrolled --begin--> PendingSecret (old secret stays active until confirm)

Error semantics:
- Precondition failures raise (NotAuthorizedError, InvalidUserError,
  InvalidTotpError for "TOTP not enabled" / "no enrollment pending")
- A wrong code on disable/regenerate is a normal outcome: False / None
- A wrong code on confirm raises InvalidTotpError, the enrollment stays
  pending and can be retried
"""

from typing import Any, Dict, Optional

from app.config import Settings, get_settings
from app.models.two_factor import (
    BackupCodeBatch,
    PendingEnrollment,
    UserSecondFactor,
    VerificationRequest,
)
from app.models.user import UserAccount
from app.services.backup_codes import BackupCodeGenerator
from app.services.code_verifier import CodeVerifier
from app.services.errors import (
    EmailSendError,
    InvalidTotpError,
    InvalidUserError,
    NotAuthorizedError,
)
from app.services.mailer import Mailer
from app.services.notifications import UserChangeNotifier
from app.services.secret_store import SecretStore
from app.services.session_store import SessionStore, hash_login_token
from app.services.totp import generate_otpauth_url, generate_totp_secret
from app.services.user_service import UserDirectory
from app.utils.logger import get_logger

logger = get_logger(__name__)

TOTP_ENABLED_FIELD = "services.totp.enabled"
LOGIN_TOKENS_FIELD = "services.resume.loginTokens"
EMAIL_2FA_ENABLED_FIELD = "services.email2fa.enabled"


class EnrollmentFlow:
    def __init__(
        self,
        store: SecretStore,
        verifier: CodeVerifier,
        users: UserDirectory,
        sessions: SessionStore,
        notifier: UserChangeNotifier,
        mailer: Mailer,
        generator: Optional[BackupCodeGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.users = users
        self.sessions = sessions
        self.notifier = notifier
        self.mailer = mailer
        self.settings = settings or get_settings()
        self.generator = generator or BackupCodeGenerator(
            count=self.settings.backup_code_count,
            rounds=self.settings.backup_code_hash_rounds,
        )

    async def _require_user(self, user_id: Optional[str], method: str) -> UserAccount:
        if not user_id:
            raise NotAuthorizedError()

        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise InvalidUserError(method=method)
        return user

    async def _require_enabled(self, user_id: str, method: str) -> UserSecondFactor:
        record = await self.store.get(user_id)
        if record is None or not record.enabled:
            raise InvalidTotpError("TOTP is not enabled", method=method)
        return record

    async def begin_enrollment(self, user_id: Optional[str]) -> PendingEnrollment:
        """Generate a new TOTP seed and park it as the pending temp secret.

        Calling again before confirmation replaces the pending seed.

        Returns:
            PendingEnrollment with the base32 secret and otpauth URL

        Raises:
            NotAuthorizedError: No authenticated user
            InvalidUserError: User missing or without a username
        """
        user = await self._require_user(user_id, "2fa:enable")
        if not user.username:
            raise InvalidUserError(method="2fa:enable")

        secret = generate_totp_secret()
        await self.store.set_temp_secret(user.user_id, secret)

        logger.log_security_event("enrollment_started", user_id=user.user_id)

        return PendingEnrollment(
            secret=secret,
            url=generate_otpauth_url(secret, user.username, self.settings.totp_issuer),
        )

    async def confirm_enrollment(
        self,
        user_id: Optional[str],
        code: str,
        auth_token: Optional[str] = None,
    ) -> BackupCodeBatch:
        """Prove the pending seed with a code and activate it.

        Only the pending temp secret is checked; the previous secret and its
        backup codes never confirm a new enrollment. When `auth_token` is
        given, every other non personal-access login token is removed.

        Returns:
            Fresh backup codes, shown to the user exactly once

        Raises:
            NotAuthorizedError: No authenticated user
            InvalidUserError: User not found
            InvalidTotpError: No enrollment pending, wrong code, or the pending
                seed was replaced while confirming
        """
        user = await self._require_user(user_id, "2fa:validateTempToken")

        record = await self.store.get(user.user_id)
        if record is None or not record.temp_secret:
            raise InvalidTotpError(method="2fa:validateTempToken")

        temp_secret = record.temp_secret
        verified = self.verifier.verify_enrollment(
            VerificationRequest(
                user_id=user.user_id, submitted_code=code, temp_secret=temp_secret
            )
        )
        if not verified:
            logger.log_security_event(
                "enrollment_code_rejected", user_id=user.user_id, success=False
            )
            raise InvalidTotpError("Invalid TOTP provided")

        batch = self.generator.generate()
        confirmed = await self.store.confirm_enrollment(
            user.user_id, temp_secret, batch.hashes
        )
        if not confirmed:
            logger.log_security_event(
                "enrollment_superseded", user_id=user.user_id, success=False
            )
            raise InvalidTotpError("Invalid TOTP provided")

        logger.log_security_event("enrollment_confirmed", user_id=user.user_id)

        await self._prune_other_sessions(user.user_id, auth_token)

        return batch

    async def _prune_other_sessions(
        self, user_id: str, auth_token: Optional[str]
    ) -> None:
        pruned = 0
        if auth_token:
            result = await self.sessions.prune_login_tokens_except(
                user_id, hash_login_token(auth_token)
            )
            pruned = result.modified_count

        if pruned > 0:

            async def compute_diff() -> Dict[str, Any]:
                tokens = await self.sessions.find_user_login_tokens(user_id)
                record = await self.store.get(user_id)
                return {
                    LOGIN_TOKENS_FIELD: [t.hashed_token for t in tokens],
                    TOTP_ENABLED_FIELD: bool(record and record.enabled),
                }

            self.notifier.notify_user_changed_async(user_id, compute_diff)
        else:
            self.notifier.notify_user_changed(user_id, {TOTP_ENABLED_FIELD: True})

    async def disable(self, user_id: Optional[str], code: str) -> bool:
        """Turn TOTP off after checking a TOTP or backup code.

        Returns:
            True if disabled; False if TOTP was not enabled, the code was
            wrong, or nothing was modified
        """
        user = await self._require_user(user_id, "2fa:disable")

        record = await self.store.get(user.user_id)
        if record is None or not record.enabled:
            return False

        result = self.verifier.verify(
            VerificationRequest(
                user_id=user.user_id,
                submitted_code=code,
                secret=record.secret,
                backup_hashes=record.backup_code_hashes,
            )
        )
        if not result.success:
            logger.log_security_event(
                "disable_code_rejected", user_id=user.user_id, success=False
            )
            return False

        modified = await self.store.disable(user.user_id)
        if not modified:
            return False

        logger.log_security_event("totp_disabled", user_id=user.user_id)
        self.notifier.notify_user_changed(user.user_id, {TOTP_ENABLED_FIELD: False})
        return True

    async def regenerate_backup_codes(
        self, user_id: Optional[str], code: str
    ) -> Optional[BackupCodeBatch]:
        """Replace all backup codes after checking a TOTP or backup code.

        Returns:
            The new batch, or None when the code was wrong

        Raises:
            InvalidTotpError: TOTP is not enabled
        """
        user = await self._require_user(user_id, "2fa:regenerateCodes")
        record = await self._require_enabled(user.user_id, "2fa:regenerateCodes")

        result = self.verifier.verify(
            VerificationRequest(
                user_id=user.user_id,
                submitted_code=code,
                secret=record.secret,
                backup_hashes=record.backup_code_hashes,
            )
        )
        if not result.success:
            logger.log_security_event(
                "regenerate_code_rejected", user_id=user.user_id, success=False
            )
            return None

        batch = self.generator.generate()
        await self.store.replace_backup_hashes(user.user_id, batch.hashes)

        logger.log_security_event("backup_codes_regenerated", user_id=user.user_id)
        return batch

    async def codes_remaining(self, user_id: Optional[str]) -> int:
        """Number of unused backup codes.

        Raises:
            InvalidTotpError: TOTP is not enabled
        """
        user = await self._require_user(user_id, "2fa:checkCodesRemaining")
        record = await self._require_enabled(user.user_id, "2fa:checkCodesRemaining")
        return len(record.backup_code_hashes)

    async def _send_reset_notification(self, user: UserAccount) -> None:
        addresses = user.verified_emails
        if not addresses:
            return

        subject = "Your two-factor authentication has been reset"
        text = (
            "Your TOTP has been reset.\n\n"
            "Any existing authenticator app entry for this account no longer works."
        )
        html = (
            "<p>Your TOTP has been reset.</p>"
            "<p>Any existing authenticator app entry for this account no longer works.</p>"
        )

        for address in addresses:
            try:
                await self.mailer.send(address, subject, text, html)
            except Exception as e:
                logger.error(
                    "TOTP reset notification failed",
                    user_id=user.user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise EmailSendError(
                    "Error sending TOTP reset notification", function="resetTOTP"
                ) from e

    async def reset_totp(self, user_id: str, notify_user: bool = False) -> bool:
        """Administrative reset: disable TOTP and log the user out everywhere.

        Returns:
            True if the user's TOTP state was modified

        Raises:
            InvalidUserError: User not found
            EmailSendError: Notification could not be delivered
        """
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise InvalidUserError(function="resetTOTP")

        if notify_user:
            await self._send_reset_notification(user)

        modified = await self.store.disable(user_id)
        if not modified:
            return False

        await self.sessions.unset_login_tokens(user_id)
        logger.log_security_event("totp_reset", user_id=user_id)
        self.notifier.notify_user_changed(user_id, {LOGIN_TOKENS_FIELD: []})
        return True

    async def set_email_two_factor(self, user_id: Optional[str], enabled: bool) -> bool:
        """Opt in or out of email codes.

        Returns:
            The new email two-factor state
        """
        user = await self._require_user(user_id, "2fa:email")
        await self.store.set_email_enabled(user.user_id, enabled)

        logger.log_security_event(
            "email_two_factor_enabled" if enabled else "email_two_factor_disabled",
            user_id=user.user_id,
            method="email",
        )
        self.notifier.notify_user_changed(
            user.user_id, {EMAIL_2FA_ENABLED_FIELD: enabled}
        )
        return enabled
