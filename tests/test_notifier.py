"""
Tests for the change notifier.
"""

import asyncio

import pytest

from budget_ledger.notifier import ChangeNotifier


class TestChangeNotifier:
    """Delivery, coalescing and isolation of handlers."""

    @pytest.fixture
    async def notifier(self):
        notifier = ChangeNotifier(coalesce_seconds=0.02)
        yield notifier
        await notifier.close()

    async def test_publish_reaches_every_subscriber(self, notifier):
        """Test that all handlers of an owner are called."""
        calls = []
        notifier.subscribe("p1", lambda: calls.append("a"))
        notifier.subscribe("p1", lambda: calls.append("b"))

        notifier.publish("p1")
        await notifier.flush()

        assert sorted(calls) == ["a", "b"]

    async def test_rapid_publishes_coalesce(self, notifier):
        """Test that a burst of changes produces one delivery."""
        calls = []
        notifier.subscribe("p1", lambda: calls.append(1))

        for _ in range(10):
            notifier.publish("p1")
        await notifier.flush()

        assert calls == [1]

    async def test_publish_after_delivery_delivers_again(self, notifier):
        """Test that changes after a delivery are not lost."""
        calls = []
        notifier.subscribe("p1", lambda: calls.append(1))

        notifier.publish("p1")
        await notifier.flush()
        notifier.publish("p1")
        await notifier.flush()

        assert calls == [1, 1]

    async def test_owners_are_independent(self, notifier):
        """Test that publishing for one owner does not signal another."""
        calls = []
        notifier.subscribe("p1", lambda: calls.append("p1"))
        notifier.subscribe("p2", lambda: calls.append("p2"))

        notifier.publish("p2")
        await notifier.flush()

        assert calls == ["p2"]

    async def test_unsubscribe(self, notifier):
        """Test that cancelled subscriptions receive nothing."""
        calls = []
        subscription = notifier.subscribe("p1", lambda: calls.append(1))
        assert notifier.subscriber_count("p1") == 1

        subscription.cancel()
        notifier.publish("p1")
        await notifier.flush()

        assert calls == []
        assert notifier.subscriber_count("p1") == 0

    async def test_unsubscribe_unknown_handler(self, notifier):
        """Test that removing an unknown handler is a no-op."""
        notifier.unsubscribe("p1", lambda: None)
        assert notifier.subscriber_count("p1") == 0

    async def test_failing_handler_is_isolated(self, notifier):
        """Test that one failing handler does not stop the others."""
        calls = []

        def broken():
            raise RuntimeError("render failed")

        notifier.subscribe("p1", broken)
        notifier.subscribe("p1", lambda: calls.append(1))

        notifier.publish("p1")
        await notifier.flush()

        assert calls == [1]

    async def test_async_handler(self, notifier):
        """Test that coroutine handlers are awaited."""
        calls = []

        async def handler():
            await asyncio.sleep(0)
            calls.append(1)

        notifier.subscribe("p1", handler)
        notifier.publish("p1")
        await notifier.flush()

        assert calls == [1]

    async def test_same_handler_registered_once(self, notifier):
        """Test that subscribing the same handler twice delivers once."""
        calls = []

        def handler():
            calls.append(1)

        notifier.subscribe("p1", handler)
        notifier.subscribe("p1", handler)
        notifier.publish("p1")
        await notifier.flush()

        assert calls == [1]

    async def test_close_drops_pending(self, notifier):
        """Test that close() cancels deliveries not yet made."""
        calls = []
        notifier.subscribe("p1", lambda: calls.append(1))

        notifier.publish("p1")
        await notifier.close()
        await asyncio.sleep(0.05)

        assert calls == []
        assert notifier.subscriber_count("p1") == 0
