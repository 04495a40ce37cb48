"""
In-process event bus.

Decouples the monitors from their consumers (dashboard, WebSocket broadcaster,
registration bridge). Topics are dot-separated and hierarchical:

    server.refresh       - one target's full state after a poll
    wallet.refresh       - the wallet state after a chain run
    proxy.connected      - a miner opened a connection through the proxy
    proxy.disconnected   - that connection closed

Subscription patterns support ``*`` (exactly one segment) and ``**``
(zero or more segments).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

TOPIC_SERVER_REFRESH = "server.refresh"
TOPIC_WALLET_REFRESH = "wallet.refresh"
TOPIC_PROXY_CONNECTED = "proxy.connected"
TOPIC_PROXY_DISCONNECTED = "proxy.disconnected"

# Handlers may be sync or async: handler(topic, payload) -> None | Awaitable[None]
EventHandler = Callable[[str, Any], Any]


def topic_matches(pattern: str, topic: str) -> bool:
    """Check whether a dot-separated topic matches a subscription pattern."""
    return _match_segments(pattern.split("."), topic.split("."))


def _match_segments(pattern: list[str], topic: list[str]) -> bool:
    if not pattern:
        return not topic

    head = pattern[0]
    if head == "**":
        # Zero or more segments
        return any(
            _match_segments(pattern[1:], topic[i:])
            for i in range(len(topic) + 1)
        )

    if not topic:
        return False

    if head != "*" and head != topic[0]:
        return False

    return _match_segments(pattern[1:], topic[1:])


@dataclass
class _Subscription:
    pattern: str
    handler: EventHandler


class EventBus:
    """
    Publish/subscribe channel shared by all monitors.

    Delivery is in-process and in subscription order. Plain handlers run
    synchronously inside publish(); coroutine handlers are scheduled as tasks
    on the running loop. A failing handler is logged and never affects the
    publisher or other subscribers.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe("server.*", on_server_event)
        bus.publish("server.refresh", state)
        unsubscribe()
        await bus.close()
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        """Whether the bus has been torn down."""
        return self._closed

    @property
    def subscriber_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for every topic matching pattern.

        Args:
            pattern: Topic pattern (e.g. "server.refresh", "proxy.*", "**")
            handler: Callable invoked as handler(topic, payload)

        Returns:
            Callable that removes this subscription
        """
        subscription = _Subscription(pattern=pattern, handler=handler)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        """
        Deliver payload to all subscribers of topic.

        Returns:
            Number of handlers the event was delivered to
        """
        if self._closed:
            logger.debug(f"Event bus closed, dropping {topic}")
            return 0

        delivered = 0
        # Copy so handlers may (un)subscribe while we iterate
        for subscription in list(self._subscriptions):
            if not topic_matches(subscription.pattern, topic):
                continue
            delivered += 1
            try:
                result = subscription.handler(topic, payload)
                if inspect.isawaitable(result):
                    self._track(result, topic)
            except Exception as e:
                logger.error(f"Error in event handler for {topic}: {e}")

        return delivered

    def _track(self, awaitable: Any, topic: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Error in async event handler for {topic}: {exc}")

        task.add_done_callback(done)

    async def close(self) -> None:
        """Drop all subscriptions and cancel pending async handlers."""
        self._closed = True
        self._subscriptions.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until all scheduled async handlers have finished."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
