"""Two-Factor Checker - decides whether a call needs a code and checks it

Order of evaluation for one user:
1. Global switch off: nothing to check
2. Code and method may arrive as x-2fa-code / x-2fa-method headers
3. A login token with a remembered authorization for the same connection
   fingerprint skips the check, unless the caller passed a code explicitly
   or the options disable remembered authorizations
4. Method: the requested one if enabled, else the first enabled of
   totp, email, password (password only when the fallback is allowed)
5. No code: the method may issue one (email), then `totp-required`
6. Wrong code: count it, then `totp-max-attempts` or `totp-invalid`
7. Success: remember the authorization on the login token

Failure errors carry the method so clients can prompt for the right code.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from app.config import Settings, get_settings
from app.models.two_factor import ConnectionInfo, TwoFactorMethod, TwoFactorOptions
from app.models.user import UserAccount
from app.services.code_checks import (
    CodeCheck,
    EmailCheck,
    PasswordCheckFallback,
    TOTPCheck,
)
from app.services.errors import TotpInvalidError, TotpMaxAttemptsError, TotpRequiredError
from app.services.secret_store import SecretStore
from app.services.session_store import SessionStore, hash_login_token
from app.utils.logger import get_logger

logger = get_logger(__name__)

CODE_HEADER = "x-2fa-code"
METHOD_HEADER = "x-2fa-method"


def connection_fingerprint(connection: ConnectionInfo) -> str:
    """Stable hash of the caller's address and user agent."""
    raw = f"{connection.client_address or ''}{connection.user_agent}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class TwoFactorChecker:
    def __init__(
        self,
        store: SecretStore,
        sessions: SessionStore,
        totp_check: TOTPCheck,
        email_check: EmailCheck,
        password_check: PasswordCheckFallback,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.totp_check = totp_check
        self.email_check = email_check
        self.password_check = password_check
        self.settings = settings or get_settings()

    def _checks(self, disable_password_fallback: bool) -> List[CodeCheck]:
        checks: List[CodeCheck] = [self.totp_check, self.email_check]
        if not disable_password_fallback:
            checks.append(self.password_check)
        return checks

    async def available_methods(
        self, user: UserAccount, disable_password_fallback: bool = False
    ) -> List[str]:
        return [
            check.name
            for check in self._checks(disable_password_fallback)
            if await check.is_enabled(user)
        ]

    async def _select_method(
        self, user: UserAccount, requested: Optional[str], options: TwoFactorOptions
    ) -> Tuple[Optional[CodeCheck], bool]:
        checks = self._checks(options.disable_password_fallback)

        if requested:
            for check in checks:
                if check.name == requested and await check.is_enabled(user):
                    return check, False

        for check in checks:
            if await check.is_enabled(user):
                return check, False

        if options.require_password:
            return self.password_check, True

        return None, False

    async def is_authorized_for_token(
        self, user: UserAccount, connection: Optional[ConnectionInfo]
    ) -> bool:
        """True if the connection's login token remembers a recent check."""
        if connection is None or not connection.auth_token:
            return False

        token = await self.sessions.find_login_token(
            user.user_id, hash_login_token(connection.auth_token)
        )
        if token is None or token.two_factor_authorized_until is None:
            return False

        if token.two_factor_authorized_until <= datetime.now(timezone.utc):
            return False

        return token.two_factor_authorized_hash == connection_fingerprint(connection)

    async def remember_authorization(
        self, user: UserAccount, connection: Optional[ConnectionInfo]
    ) -> None:
        seconds = self.settings.two_factor_remember_for_seconds
        if connection is None or not connection.auth_token or seconds <= 0:
            return

        await self.sessions.remember_two_factor(
            user.user_id,
            hash_login_token(connection.auth_token),
            until=datetime.now(timezone.utc) + timedelta(seconds=seconds),
            fingerprint_hash=connection_fingerprint(connection),
        )

    async def check(
        self,
        user: UserAccount,
        code: Optional[str] = None,
        method: Optional[str] = None,
        options: Optional[TwoFactorOptions] = None,
        connection: Optional[ConnectionInfo] = None,
    ) -> Optional[str]:
        """Check a code for a user.

        Args:
            user: Subject account
            code: Submitted code, or None for a contextual check
            method: Requested method name
            options: Per-call options
            connection: Caller transport info (headers, token, address)

        Returns:
            Name of the method that passed, or None if no check was needed

        Raises:
            TotpRequiredError: A second factor applies and no code was given
            TotpInvalidError: The code was wrong
            TotpMaxAttemptsError: The code was wrong and the limit is reached
        """
        if not self.settings.two_factor_enabled:
            return None

        options = options or TwoFactorOptions()
        explicit_code = bool(code)

        if connection is not None and not code and not method:
            code = connection.header(CODE_HEADER)
            method = connection.header(METHOD_HEADER)

        if (
            not explicit_code
            and not options.require_password
            and not options.disable_remember_me
            and await self.is_authorized_for_token(user, connection)
        ):
            return None

        selected, forced = await self._select_method(user, method, options)
        if selected is None:
            return None

        if not code:
            result = await selected.process_invalid_code(user)
            available = await self.available_methods(
                user, options.disable_password_fallback
            )
            logger.log_security_event(
                "code_required", user_id=user.user_id, success=False, method=selected.name
            )
            raise TotpRequiredError(
                method=selected.name,
                availableMethods=available or [selected.name],
                **result.to_dict(),
            )

        valid = await selected.verify(user, code, force=forced)
        if not valid:
            if selected.name != TwoFactorMethod.PASSWORD.value:
                failed = await self.store.increment_failed_attempts(user.user_id)
                if await selected.max_failed_attempts_reached(user, failed):
                    logger.log_security_event(
                        "max_attempts_reached",
                        user_id=user.user_id,
                        success=False,
                        method=selected.name,
                        failed_attempts=failed,
                    )
                    raise TotpMaxAttemptsError(method=selected.name)

            logger.log_security_event(
                "code_rejected", user_id=user.user_id, success=False, method=selected.name
            )
            raise TotpInvalidError(method=selected.name)

        if not options.disable_remember_me:
            await self.remember_authorization(user, connection)

        logger.log_security_event(
            "code_accepted", user_id=user.user_id, method=selected.name
        )
        return selected.name
