"""
Dynamic target registration from proxy connections.

A miner that opens a connection to the wallet through the proxy is a live
miner, whether or not static config or range discovery knows about it. The
bridge turns proxy connect/disconnect notifications into target registration
and an immediate poll.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .events import TOPIC_PROXY_CONNECTED, TOPIC_PROXY_DISCONNECTED, EventBus
from .models import TargetDefaults, TargetDescriptor
from .scheduler import TargetScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProxyConnection:
    """Payload of proxy.connected / proxy.disconnected."""
    address: str
    defaults: TargetDefaults = field(default_factory=TargetDefaults)


class RegistrationBridge:
    """
    Subscribes to proxy events and upserts targets in the scheduler.

    Usage:
        bridge = RegistrationBridge(bus, scheduler)
        bridge.attach()
        ...
        bridge.detach()
    """

    def __init__(self, bus: EventBus, scheduler: TargetScheduler):
        self._bus = bus
        self._scheduler = scheduler
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def is_attached(self) -> bool:
        return bool(self._unsubscribers)

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(TOPIC_PROXY_CONNECTED, self._on_connected),
            self._bus.subscribe(TOPIC_PROXY_DISCONNECTED, self._on_disconnected),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_connected(self, topic: str, payload: Any) -> None:
        connection = _as_connection(payload)
        if connection is None:
            logger.warning(f"Ignoring {topic} with unexpected payload {payload!r}")
            return

        state, created = self._scheduler.register(
            TargetDescriptor.from_defaults(connection.address, connection.defaults)
        )
        if created:
            logger.info(f"Discovered miner {connection.address} via wallet proxy")

        state.mark_wallet_connected()
        self._scheduler.poll_now(connection.address)

    def _on_disconnected(self, topic: str, payload: Any) -> None:
        connection = _as_connection(payload)
        if connection is None:
            logger.warning(f"Ignoring {topic} with unexpected payload {payload!r}")
            return

        state = self._scheduler.get(connection.address)
        if state is None:
            return

        state.mark_wallet_disconnected()
        self._scheduler.poll_now(connection.address)


def _as_connection(payload: Any) -> Optional[ProxyConnection]:
    if isinstance(payload, ProxyConnection):
        return payload
    if isinstance(payload, str) and payload:
        return ProxyConnection(address=payload)
    return None
