"""
Test fixtures for the core layer.

IMPORTANT: No test in this layer opens a socket.
Probes and wallet clients are replaced by in-memory fakes.
"""

import asyncio
from dataclasses import replace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from miner_monitor.core.events import EventBus
from miner_monitor.core.models import TargetDefaults, TargetDescriptor, WalletState


# =============================================================================
# Fakes
# =============================================================================


class ScriptedProbe:
    """
    Probe fake that answers from a per-address script.

    Each script entry is either a dict (returned) or an exception (raised).
    The last entry repeats once the script is exhausted.
    """

    def __init__(self):
        self.scripts: dict[str, list[Any]] = {}
        self.calls: list[str] = []

    def script(self, address: str, *outcomes: Any) -> None:
        self.scripts[address] = list(outcomes)

    async def probe(self, target: TargetDescriptor) -> dict[str, Any]:
        self.calls.append(target.address)
        script = self.scripts.get(target.address) or [{"speed": 1}]
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class EventRecorder:
    """Collects (topic, payload) pairs delivered by the bus."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def __call__(self, topic: str, payload: Any) -> None:
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def bus():
    """A fresh event bus."""
    return EventBus()


@pytest.fixture
def recorder(bus):
    """Records every event published on the bus."""
    recorder = EventRecorder()
    bus.subscribe("**", recorder)
    return recorder


@pytest.fixture
def probe():
    return ScriptedProbe()


@pytest.fixture
def slow_defaults():
    """Long intervals so no timer fires during a test."""
    return TargetDefaults(
        port=7111,
        timeout=3,
        interval=3600,
        mark_down_after=3,
        retry_after_down=86400,
    )


@pytest.fixture
def make_descriptor(slow_defaults):
    """Factory for target descriptors using slow defaults."""

    def _make(address: str = "10.0.0.1", **overrides) -> TargetDescriptor:
        descriptor = TargetDescriptor.from_defaults(address, slow_defaults)
        if overrides:
            descriptor = replace(descriptor, **overrides)
        return descriptor

    return _make


@pytest.fixture
def miner_response():
    """A typical miner API answer."""
    return {
        "speed": 1250.5,
        "accepted": 42,
        "rejected": 1,
        "failed": 0,
        "uptime": 3600,
        "extrapayload": "rig-a",
        "stratum.server": "pool.example.com:3333",
        "stratum.user": "worker1",
        "diff": 16.0,
    }


@pytest.fixture
def wallet_client():
    """Wallet client whose four calls succeed."""
    client = AsyncMock()
    client.get_block_count.return_value = 100
    client.get_accounts_count.return_value = 3
    client.get_balance.return_value = 12.5
    client.get_latest_block.return_value = {"height": 100, "hash": "abc"}
    return client


@pytest.fixture
def wallet_state():
    return WalletState(ip="127.0.0.1", port=4003, interval=10)


@pytest.fixture
def settle():
    """Coroutine that lets tasks scheduled on the loop run."""

    async def _settle(rounds: int = 5) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
