"""Two-Factor Required - second-factor enforcement for sensitive methods

An interceptor for the method pipeline (and a plain function wrapper for
callers outside it). For each invocation:

1. No authenticated user: NotAuthorizedError
2. An explicit second-factor payload is always verified, even when the call
   context is already checked; success marks the context checked. For older
   clients a trailing `{"twoFactorCode", "twoFactorMethod"}` argument is
   accepted as the payload and always removed from the arguments; an
   explicit payload wins over it
3. Still unchecked: a contextual check without a code (remembered
   authorization, or no second factor configured for the user)
4. The method runs with the remaining arguments

Verification errors propagate and the method never runs.
"""

import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from app.models.two_factor import ConnectionInfo, TwoFactorOptions, TwoFactorPayload
from app.models.user import UserAccount
from app.services.errors import InvalidUserError, NotAuthorizedError
from app.services.two_factor_checker import TwoFactorChecker
from app.services.user_service import UserDirectory
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CallContext:
    """Per-call state. `two_factor_checked` lives only as long as the call."""

    user_id: Optional[str] = None
    connection: Optional[ConnectionInfo] = None
    two_factor_checked: bool = False


class TwoFactorRequired:
    def __init__(
        self,
        checker: TwoFactorChecker,
        users: UserDirectory,
        options: Optional[TwoFactorOptions] = None,
    ):
        self.checker = checker
        self.users = users
        self.options = options or TwoFactorOptions()

    async def _load_user(self, user_id: str) -> UserAccount:
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise InvalidUserError()
        return user

    async def enforce(
        self,
        context: CallContext,
        args: Sequence[Any],
        two_factor: Optional[TwoFactorPayload] = None,
    ) -> List[Any]:
        """Run the checks for one call.

        Returns:
            Arguments to forward to the method
        """
        if not context.user_id:
            raise NotAuthorizedError("Not authorized")

        forwarded = list(args)
        if forwarded:
            legacy = TwoFactorPayload.from_legacy_argument(forwarded[-1])
            if legacy is not None:
                forwarded.pop()
                if two_factor is None:
                    two_factor = legacy

        if two_factor is not None:
            user = await self._load_user(context.user_id)
            await self.checker.check(
                user,
                code=two_factor.code,
                method=two_factor.method,
                options=self.options,
                connection=context.connection,
            )
            context.two_factor_checked = True

        if not context.two_factor_checked:
            user = await self._load_user(context.user_id)
            await self.checker.check(
                user, options=self.options, connection=context.connection
            )

        return forwarded

    async def __call__(self, invocation, call_next):
        invocation.args = await self.enforce(
            invocation.context, invocation.args, invocation.two_factor
        )
        invocation.two_factor = None
        return await call_next(invocation)


def wrap_with_two_factor(
    fn: Callable[..., Awaitable[Any]],
    checker: TwoFactorChecker,
    users: UserDirectory,
    options: Optional[TwoFactorOptions] = None,
) -> Callable[..., Awaitable[Any]]:
    """Wrap `async fn(context, *args)` with second-factor enforcement.

    The wrapper takes the same arguments plus an optional keyword-only
    `two_factor` payload.
    """
    gate = TwoFactorRequired(checker, users, options)

    @functools.wraps(fn)
    async def wrapper(
        context: CallContext, *args: Any, two_factor: Optional[TwoFactorPayload] = None
    ) -> Any:
        forwarded = await gate.enforce(context, args, two_factor)
        return await fn(context, *forwarded)

    return wrapper
