"""Login Gate - second-factor check on login attempts

Rules, in order:
1. resume, proxy and cas logins, password resets and email verification
   bypass the second factor
2. A second factor used as the login method (`totp.login`) is resolved by
   the login handler chain from the nested options
3. Otherwise the code (possibly absent) goes to the checker, which raises
   when the user has a second factor and the code is missing or wrong
4. After a successful login the last-login time is updated and login
   listeners fire, except for resumed sessions

The password fallback never applies at login: the password was just checked.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from app.models.two_factor import ConnectionInfo, TwoFactorMethod, TwoFactorOptions
from app.models.user import UserAccount
from app.services.login_handlers import LoginHandlerRegistry
from app.services.secret_store import SecretStore
from app.services.session_store import SessionStore
from app.services.two_factor_checker import TwoFactorChecker
from app.services.user_service import UserDirectory
from app.utils.logger import get_logger

logger = get_logger(__name__)

BYPASS_TYPES = {"resume", "proxy", "cas"}

LoginListener = Callable[["LoginAttempt"], Awaitable[None]]


@dataclass
class LoginAttempt:
    """One login attempt as seen by the gate.

    Attributes:
        type: Login handler that resolved the user (password, resume, ...)
        user: Resolved account, None if credentials did not resolve
        method_name: Calling method (login, resetPassword, verifyEmail)
        method_arguments: Arguments of the calling method; the first one
            holds the login options including an optional `totp` payload
        connection: Caller transport info
    """

    type: str
    user: Optional[UserAccount]
    method_name: str = "login"
    method_arguments: List[Any] = field(default_factory=list)
    connection: Optional[ConnectionInfo] = None

    @property
    def totp_payload(self) -> Dict[str, Any]:
        if not self.method_arguments or not isinstance(self.method_arguments[0], dict):
            return {}
        totp = self.method_arguments[0].get("totp")
        return totp if isinstance(totp, dict) else {}

    @property
    def bypasses_two_factor(self) -> bool:
        if self.user is None:
            return True
        if self.type in BYPASS_TYPES:
            return True
        if self.type == "password" and self.method_name == "resetPassword":
            return True
        return self.method_name == "verifyEmail"


class LoginGate:
    def __init__(
        self,
        checker: TwoFactorChecker,
        store: SecretStore,
        users: UserDirectory,
        sessions: SessionStore,
        handlers: LoginHandlerRegistry,
    ):
        self.checker = checker
        self.store = store
        self.users = users
        self.sessions = sessions
        self.handlers = handlers
        self._listeners: List[LoginListener] = []

    def on_login(self, listener: LoginListener) -> None:
        """Register a post-login listener."""
        self._listeners.append(listener)

    async def verify_login_attempt(self, attempt: LoginAttempt) -> Optional[str]:
        """Apply the second-factor rules to a resolved login attempt.

        Returns:
            Method that passed, or None when no check applied

        Raises:
            TotpRequiredError, TotpInvalidError, TotpMaxAttemptsError
        """
        if attempt.bypasses_two_factor:
            return None

        totp = attempt.totp_payload
        method = await self.checker.check(
            attempt.user,
            code=totp.get("code"),
            method=totp.get("method"),
            options=TwoFactorOptions(disable_password_fallback=True),
            connection=attempt.connection,
        )

        if method == TwoFactorMethod.TOTP.value:
            await self.store.remove_email_code(attempt.user.user_id)

        return method

    async def after_login(self, attempt: LoginAttempt) -> None:
        if attempt.user is None or attempt.type == "resume":
            return

        await self.users.update_last_login(attempt.user.user_id)
        for listener in list(self._listeners):
            await listener(attempt)

    async def login(
        self,
        options: Dict[str, Any],
        connection: Optional[ConnectionInfo] = None,
        method_name: str = "login",
    ) -> Tuple[LoginAttempt, str]:
        """Resolve credentials, enforce the second factor, issue a token.

        Returns:
            (attempt, login token); resumed sessions keep their token
        """
        result = await self.handlers.run(options)
        attempt = LoginAttempt(
            type=result.type,
            user=result.user,
            method_name=method_name,
            method_arguments=[options],
            connection=connection,
        )

        await self.verify_login_attempt(attempt)

        if attempt.type == "resume":
            token = options["resume"]
        else:
            token = await self.sessions.insert_login_token(result.user.user_id)

        await self.after_login(attempt)

        logger.info("Login succeeded", user_id=result.user.user_id, type=attempt.type)
        return attempt, token
