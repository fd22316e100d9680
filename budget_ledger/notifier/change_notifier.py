"""
Change Notifier

Fans out a payload-free "ledger changed, re-read" signal to every
subscriber of an owner's budget.

GUARANTEES:
- publish() is only called after the mutation is durably committed
- Delivery is at-least-once per subscriber for each burst of changes
- Publishes for the same owner inside the coalescing window collapse
  into a single delivery
- A failing handler is logged and never affects the other handlers

Handlers must treat a notification as a hint to refetch a snapshot,
never as authoritative data.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Awaitable, Callable, Optional, Union

import structlog


Handler = Callable[[], Union[None, Awaitable[None]]]

logger = structlog.get_logger(__name__)


class Subscription:
    """Handle returned by subscribe(); cancel() is the same as unsubscribe()."""

    def __init__(self, notifier: "ChangeNotifier", owner_id: str, handler: Handler):
        self._notifier = notifier
        self.owner_id = owner_id
        self.handler = handler

    def cancel(self) -> None:
        self._notifier.unsubscribe(self.owner_id, self.handler)


class ChangeNotifier:
    """
    In-process publish/subscribe channel keyed by owner id.
    """

    def __init__(self, coalesce_seconds: float = 0.05):
        self._coalesce_seconds = coalesce_seconds
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: dict[str, asyncio.Task] = {}

    def subscribe(self, owner_id: str, handler: Handler) -> Subscription:
        """Register a handler invoked (with no arguments) whenever the owner's ledger changes."""
        if handler not in self._handlers[owner_id]:
            self._handlers[owner_id].append(handler)
        return Subscription(self, owner_id, handler)

    def unsubscribe(self, owner_id: str, handler: Handler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(owner_id)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[owner_id]

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._handlers.get(owner_id, []))

    def publish(self, owner_id: str) -> None:
        """
        Signal that the owner's ledger changed.

        Must be called from inside a running event loop. If a delivery is
        already scheduled for this owner, the change rides along with it.
        """
        if owner_id in self._pending:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(owner_id))
        self._pending[owner_id] = task

    async def _deliver(self, owner_id: str) -> None:
        try:
            if self._coalesce_seconds:
                await asyncio.sleep(self._coalesce_seconds)
        finally:
            # Later publishes must schedule a fresh delivery
            self._pending.pop(owner_id, None)

        for handler in list(self._handlers.get(owner_id, [])):
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "change_handler_failed",
                    owner_id=owner_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every scheduled delivery has run."""
        while self._pending:
            await asyncio.wait_for(
                asyncio.gather(*list(self._pending.values()), return_exceptions=True),
                timeout,
            )

    async def close(self) -> None:
        """Cancel pending deliveries and drop all subscribers."""
        for task in list(self._pending.values()):
            task.cancel()
        await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
        self._pending.clear()
        self._handlers.clear()
