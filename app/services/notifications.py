"""User change notifications

Listeners receive `(user_id, diff)` whenever second-factor or session state
of a user changes. The async variant defers computing the diff until it
runs, so it reflects state written after the call (e.g. login tokens
pruned by the caller).
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.utils.logger import get_logger

logger = get_logger(__name__)

UserChangeListener = Callable[[str, Dict[str, Any]], None]


class UserChangeNotifier:
    """In-process broadcast of user record changes."""

    def __init__(self):
        self._listeners: List[UserChangeListener] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, listener: UserChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: UserChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_user_changed(self, user_id: str, diff: Dict[str, Any]) -> None:
        """Deliver a diff to every listener. Listener failures are logged."""
        logger.debug("User changed", user_id=user_id, fields=sorted(diff.keys()))
        for listener in list(self._listeners):
            try:
                listener(user_id, diff)
            except Exception as e:
                logger.error(
                    "User change listener failed",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def notify_user_changed_async(
        self,
        user_id: str,
        compute_diff: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    ) -> asyncio.Task:
        """Schedule a notification whose diff is computed when it runs.

        `compute_diff` returning None means there is nothing to announce.
        """

        async def run() -> None:
            try:
                diff = await compute_diff()
            except Exception as e:
                logger.error(
                    "Computing user change failed", user_id=user_id, error=str(e)
                )
                return
            if diff is not None:
                self.notify_user_changed(user_id, diff)

        task = asyncio.create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled notifications (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
