"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/miner_monitor/{layer}/tests/conftest.py
"""

import asyncio
import json

import pytest

from miner_monitor.core.events import EventBus


# =============================================================================
# Fake network peers
# =============================================================================


@pytest.fixture
async def fake_miner():
    """
    A miner API on 127.0.0.1 answering every trigger with fixed metrics.

    Yields the handle; set handle.payload to change the next answers.
    """

    class Miner:
        payload = {"speed": 2048.0, "accepted": 10, "rejected": 0, "uptime": 60}
        port = 0
        connections = 0

    miner = Miner()

    async def handle(reader, writer):
        miner.connections += 1
        await reader.read(1)
        writer.write(json.dumps(miner.payload).encode())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    miner.port = server.sockets[0].getsockname()[1]

    yield miner

    server.close()
    await server.wait_closed()


@pytest.fixture
async def fake_wallet_tcp():
    """A wallet endpoint that answers every request with a fixed line."""

    async def handle(reader, writer):
        while True:
            data = await reader.read(1024)
            if not data:
                break
            writer.write(b'{"result": "ok"}\n')
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest.fixture
async def bus():
    bus = EventBus()
    yield bus
    await bus.close()


async def eventually(predicate, timeout: float = 3.0) -> bool:
    """Poll predicate until it holds or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


@pytest.fixture
def wait_until():
    return eventually
