"""Method Pipeline - named remote methods with interceptors

Methods are `async fn(context, *args)`. Each registered method may carry
interceptors, `async interceptor(invocation, call_next)`, which run in
registration order around the method.

The invocation being executed is held in a ContextVar. A method that calls
another method through the pipeline creates a nested invocation which
inherits `two_factor_checked` from its parent, so a second factor checked
once is not asked for again within the same call chain. Separate requests
run in separate contexts and never see each other's invocations.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from app.middleware.two_factor_required import CallContext
from app.models.two_factor import TwoFactorPayload
from app.utils.logger import get_logger

logger = get_logger(__name__)

MethodHandler = Callable[..., Awaitable[Any]]


@dataclass
class MethodInvocation:
    name: str
    context: CallContext
    args: List[Any] = field(default_factory=list)
    two_factor: Optional[TwoFactorPayload] = None
    parent: Optional["MethodInvocation"] = None


Interceptor = Callable[
    [MethodInvocation, Callable[[MethodInvocation], Awaitable[Any]]], Awaitable[Any]
]

_current_invocation: ContextVar[Optional[MethodInvocation]] = ContextVar(
    "current_invocation", default=None
)


def get_current_invocation() -> Optional[MethodInvocation]:
    return _current_invocation.get()


class MethodNotFoundError(Exception):
    """Raised when calling a method that was never registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Method '{name}' not found")


@dataclass
class _RegisteredMethod:
    handler: MethodHandler
    interceptors: List[Interceptor]


class MethodPipeline:
    def __init__(self):
        self._methods: Dict[str, _RegisteredMethod] = {}

    @property
    def method_names(self) -> List[str]:
        return sorted(self._methods)

    def register(
        self,
        name: str,
        handler: MethodHandler,
        interceptors: Sequence[Interceptor] = (),
    ) -> None:
        if name in self._methods:
            raise ValueError(f"Method '{name}' is already registered")
        self._methods[name] = _RegisteredMethod(handler, list(interceptors))
        logger.debug("Method registered", method=name, interceptors=len(interceptors))

    def method(self, name: str, interceptors: Sequence[Interceptor] = ()):
        """Decorator form of `register`."""

        def decorator(handler: MethodHandler) -> MethodHandler:
            self.register(name, handler, interceptors)
            return handler

        return decorator

    async def call(
        self,
        name: str,
        context: CallContext,
        args: Sequence[Any] = (),
        two_factor: Optional[TwoFactorPayload] = None,
    ) -> Any:
        """Invoke a registered method through its interceptors.

        Raises:
            MethodNotFoundError: Unknown method name
        """
        registered = self._methods.get(name)
        if registered is None:
            raise MethodNotFoundError(name)

        parent = _current_invocation.get()
        if parent is not None and parent.context.two_factor_checked:
            context.two_factor_checked = True

        invocation = MethodInvocation(
            name=name,
            context=context,
            args=list(args),
            two_factor=two_factor,
            parent=parent,
        )

        async def run_handler(inv: MethodInvocation) -> Any:
            return await registered.handler(inv.context, *inv.args)

        chain = run_handler
        for interceptor in reversed(registered.interceptors):
            chain = _bind(interceptor, chain)

        token = _current_invocation.set(invocation)
        try:
            return await chain(invocation)
        finally:
            _current_invocation.reset(token)


def _bind(
    interceptor: Interceptor, call_next: Callable[[MethodInvocation], Awaitable[Any]]
) -> Callable[[MethodInvocation], Awaitable[Any]]:
    async def bound(invocation: MethodInvocation) -> Any:
        return await interceptor(invocation, call_next)

    return bound
