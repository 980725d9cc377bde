"""User Change Notification Tests

Test Cases:
- TC-NOTIFY-01: Subscribed listeners receive every diff
- TC-NOTIFY-02: A failing listener does not stop the others
- TC-NOTIFY-03: Async notifications compute the diff when they run
- TC-NOTIFY-04: A None diff is not announced
"""

import pytest

from app.services.notifications import UserChangeNotifier


class TestUserChangeNotifier:
    def test_tc_notify_01_listeners_receive_diffs(self):
        """TC-NOTIFY-01: Subscribed listeners receive every diff."""
        notifier = UserChangeNotifier()
        received = []
        listener = lambda user_id, diff: received.append((user_id, diff))
        notifier.subscribe(listener)

        notifier.notify_user_changed("u1", {"services.totp.enabled": True})
        notifier.unsubscribe(listener)
        notifier.notify_user_changed("u1", {"services.totp.enabled": False})

        assert received == [("u1", {"services.totp.enabled": True})]

    def test_tc_notify_02_failing_listener_isolated(self):
        """TC-NOTIFY-02: A failing listener does not stop the others."""
        notifier = UserChangeNotifier()
        received = []

        def broken(user_id, diff):
            raise RuntimeError("listener down")

        notifier.subscribe(broken)
        notifier.subscribe(lambda user_id, diff: received.append(user_id))

        notifier.notify_user_changed("u1", {"x": 1})

        assert received == ["u1"]

    @pytest.mark.asyncio
    async def test_tc_notify_03_deferred_diff(self):
        """TC-NOTIFY-03: Async notifications compute the diff when they run."""
        notifier = UserChangeNotifier()
        received = []
        notifier.subscribe(lambda user_id, diff: received.append(diff))
        state = {"tokens": ["a", "b"]}

        async def compute():
            return {"services.resume.loginTokens": list(state["tokens"])}

        notifier.notify_user_changed_async("u1", compute)
        state["tokens"] = ["a"]
        await notifier.drain()

        assert received == [{"services.resume.loginTokens": ["a"]}]

    @pytest.mark.asyncio
    async def test_tc_notify_04_none_diff_skipped(self):
        """TC-NOTIFY-04: A None diff is not announced."""
        notifier = UserChangeNotifier()
        received = []
        notifier.subscribe(lambda user_id, diff: received.append(diff))

        async def nothing():
            return None

        async def broken():
            raise RuntimeError("store unavailable")

        notifier.notify_user_changed_async("u1", nothing)
        notifier.notify_user_changed_async("u1", broken)
        await notifier.drain()

        assert received == []
