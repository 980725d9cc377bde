"""Login handler chain

Each handler looks at the login options and either resolves them to a user
or returns None to let the next handler try. Registered handlers:

- resume: an existing login token (`{"resume": token}`)
- password: username or email plus the SHA-256 hex digest of the password
- totp: a second factor used as the login method itself
  (`{"totp": {"code": ..., "login": {...}}}`); the nested `login` options
  are replayed through the chain and the code is checked by the login gate
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import bcrypt

from app.models.user import UserAccount
from app.services.errors import LoginFailedError
from app.services.session_store import SessionStore, hash_login_token
from app.services.user_service import UserDirectory
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: UserAccount
    type: str


LoginHandler = Callable[[Dict[str, Any]], Awaitable[Optional[LoginResult]]]


class LoginHandlerRegistry:
    def __init__(self):
        self._handlers: List[Tuple[str, LoginHandler]] = []

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._handlers]

    def register(self, name: str, handler: LoginHandler) -> None:
        self._handlers.append((name, handler))

    async def run(self, options: Dict[str, Any]) -> LoginResult:
        """Resolve login options with the first handler that recognizes them.

        Raises:
            LoginFailedError: No handler recognized the options, or the
                recognizing handler rejected the credentials
        """
        for name, handler in self._handlers:
            result = await handler(options)
            if result is not None:
                logger.debug("Login handler matched", handler=name, type=result.type)
                return result

        raise LoginFailedError("Unrecognized options for login request")


class ResumeLoginHandler:
    def __init__(self, sessions: SessionStore, users: UserDirectory):
        self.sessions = sessions
        self.users = users

    async def __call__(self, options: Dict[str, Any]) -> Optional[LoginResult]:
        token = options.get("resume")
        if not token:
            return None

        user_id = await self.sessions.find_user_id_by_token(hash_login_token(token))
        user = await self.users.get_user_by_id(user_id) if user_id else None
        if user is None:
            raise LoginFailedError("You've been logged out by the server. Please log in again.")

        return LoginResult(user=user, type="resume")


class PasswordLoginHandler:
    def __init__(self, users: UserDirectory):
        self.users = users

    async def __call__(self, options: Dict[str, Any]) -> Optional[LoginResult]:
        username = options.get("user")
        password = options.get("password")
        if not username or password is None:
            return None

        user = await self.users.get_user_by_email_or_username(username)
        if user is None or not user.password_bcrypt:
            raise LoginFailedError()

        try:
            matches = bcrypt.checkpw(
                str(password).lower().encode("utf-8"),
                user.password_bcrypt.encode("utf-8"),
            )
        except ValueError:
            matches = False

        if not matches:
            logger.log_security_event(
                "password_rejected", user_id=user.user_id, success=False
            )
            raise LoginFailedError()

        return LoginResult(user=user, type="password")


class TotpLoginHandler:
    """Unwraps `options.totp.login` and runs it through the same chain."""

    def __init__(self, registry: LoginHandlerRegistry):
        self.registry = registry

    async def __call__(self, options: Dict[str, Any]) -> Optional[LoginResult]:
        totp = options.get("totp")
        if not isinstance(totp, dict) or not totp.get("code"):
            return None

        nested = totp.get("login")
        if not isinstance(nested, dict):
            return None

        return await self.registry.run(nested)


def create_login_handlers(
    sessions: SessionStore, users: UserDirectory
) -> LoginHandlerRegistry:
    """Build the chain in precedence order: totp, resume, password."""
    registry = LoginHandlerRegistry()
    registry.register("totp", TotpLoginHandler(registry))
    registry.register("resume", ResumeLoginHandler(sessions, users))
    registry.register("password", PasswordLoginHandler(users))
    return registry
