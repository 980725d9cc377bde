"""Second-factor code checks

Each check knows whether it applies to a user, how to verify a code, what to
do when a code is missing or wrong, and when the user has failed too often.

- TOTPCheck: authenticator app codes and backup codes
- EmailCheck: 6-digit codes mailed to the user's verified addresses
- PasswordCheckFallback: the account password, for users without a real
  second factor
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt

from app.config import Settings, get_settings
from app.models.two_factor import EmailCode, InvalidCodeResult, TwoFactorMethod
from app.models.user import UserAccount
from app.services.code_verifier import CodeVerifier
from app.services.errors import EmailSendError
from app.services.mailer import Mailer
from app.services.secret_store import SecretStore
from app.utils.logger import get_logger

logger = get_logger(__name__)

EMAIL_CODE_DIGITS = 6


class CodeCheck:
    """Interface implemented by every second-factor method."""

    name: str = ""

    async def is_enabled(self, user: UserAccount, force: bool = False) -> bool:
        raise NotImplementedError

    async def verify(self, user: UserAccount, code: str, force: bool = False) -> bool:
        raise NotImplementedError

    async def process_invalid_code(self, user: UserAccount) -> InvalidCodeResult:
        return InvalidCodeResult(code_generated=False)

    async def max_failed_attempts_reached(
        self, user: UserAccount, failed_attempts: int
    ) -> bool:
        return False


class TOTPCheck(CodeCheck):
    name = TwoFactorMethod.TOTP.value

    def __init__(
        self,
        store: SecretStore,
        verifier: CodeVerifier,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.settings = settings or get_settings()

    async def is_enabled(self, user: UserAccount, force: bool = False) -> bool:
        if not self.settings.two_factor_totp_enabled:
            return False
        record = await self.store.get(user.user_id)
        return bool(record and record.enabled)

    async def verify(self, user: UserAccount, code: str, force: bool = False) -> bool:
        if not await self.is_enabled(user):
            return False
        return await self.verifier.check_user_code(user.user_id, code)

    async def max_failed_attempts_reached(
        self, user: UserAccount, failed_attempts: int
    ) -> bool:
        return failed_attempts >= self.settings.two_factor_max_failed_attempts


class EmailCheck(CodeCheck):
    name = TwoFactorMethod.EMAIL.value

    def __init__(
        self,
        store: SecretStore,
        verifier: CodeVerifier,
        mailer: Mailer,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.mailer = mailer
        self.settings = settings or get_settings()

    async def is_enabled(self, user: UserAccount, force: bool = False) -> bool:
        if not self.settings.two_factor_email_enabled:
            return False

        if (
            not self.settings.two_factor_email_available_for_oauth_users
            and user.is_oauth_user
        ):
            return False

        record = await self.store.get(user.user_id)
        if not record or not record.email_enabled:
            return False

        return len(user.verified_emails) > 0

    async def verify(self, user: UserAccount, code: str, force: bool = False) -> bool:
        if not await self.is_enabled(user):
            return False

        record = await self.store.get(user.user_id)
        if record is None or record.email_code is None:
            return False

        if not self.verifier.verify_email_code(record.email_code, code):
            return False

        await self.store.remove_email_code(user.user_id)
        if record.failed_attempts:
            await self.store.reset_failed_attempts(user.user_id)
        return True

    async def send_email_code(self, user: UserAccount) -> EmailCode:
        """Generate a fresh code, store its hash, mail it to verified addresses.

        Raises:
            EmailSendError: If delivery to an address fails
        """
        code = "".join(str(secrets.randbelow(10)) for _ in range(EMAIL_CODE_DIGITS))
        now = datetime.now(timezone.utc)
        email_code = EmailCode(
            code_hash=bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode(
                "utf-8"
            ),
            created_at=now,
            expires_at=now
            + timedelta(seconds=self.settings.two_factor_email_code_ttl_seconds),
        )
        await self.store.set_email_code(user.user_id, email_code)

        minutes = max(1, self.settings.two_factor_email_code_ttl_seconds // 60)
        subject = "Your verification code"
        text = (
            f"Here is your authentication code: {code}\n"
            f"It expires in {minutes} minutes. Do not share it with anyone."
        )
        html = (
            f"<p>Here is your authentication code:</p><h2>{code}</h2>"
            f"<p>It expires in {minutes} minutes. Do not share it with anyone.</p>"
        )

        for address in user.verified_emails:
            try:
                await self.mailer.send(address, subject, text, html)
            except Exception as e:
                logger.error(
                    "Email code delivery failed",
                    user_id=user.user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise EmailSendError("Failed to send email code") from e

        logger.log_security_event(
            "email_code_sent", user_id=user.user_id, method=self.name
        )
        return email_code

    async def process_invalid_code(self, user: UserAccount) -> InvalidCodeResult:
        now = datetime.now(timezone.utc)
        await self.store.remove_expired_email_code(user.user_id, now)

        emails = user.verified_emails
        email_or_username = user.username or (emails[0] if emails else None)

        record = await self.store.get(user.user_id)
        pending = record.email_code if record else None
        resend_after = timedelta(
            seconds=self.settings.two_factor_email_code_resend_seconds
        )
        if pending is not None and pending.created_at + resend_after > now:
            return InvalidCodeResult(
                code_generated=False,
                code_expires=pending.expires_at,
                email_or_username=email_or_username,
            )

        email_code = await self.send_email_code(user)
        return InvalidCodeResult(
            code_generated=True,
            code_expires=email_code.expires_at,
            email_or_username=email_or_username,
        )

    async def max_failed_attempts_reached(
        self, user: UserAccount, failed_attempts: int
    ) -> bool:
        return failed_attempts >= self.settings.two_factor_max_failed_attempts


class PasswordCheckFallback(CodeCheck):
    """Accepts the client-side SHA-256 hex digest of the account password."""

    name = TwoFactorMethod.PASSWORD.value

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def is_enabled(self, user: UserAccount, force: bool = False) -> bool:
        if force:
            return True
        return (
            self.settings.two_factor_enforce_password_fallback and user.has_password
        )

    async def verify(self, user: UserAccount, code: str, force: bool = False) -> bool:
        if not await self.is_enabled(user, force):
            return False
        if not code or not user.password_bcrypt:
            return False
        try:
            return bcrypt.checkpw(
                code.lower().encode("utf-8"), user.password_bcrypt.encode("utf-8")
            )
        except ValueError:
            logger.warning("Stored password hash is malformed", user_id=user.user_id)
            return False
