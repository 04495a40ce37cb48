"""
Test fixtures for the ingestion layer.

IMPORTANT: Tests only talk to servers they start themselves on 127.0.0.1
with an ephemeral port. Never point a test at a real miner or wallet.
"""

import asyncio
import socket
from typing import Callable, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from miner_monitor.core.events import EventBus
from miner_monitor.core.models import TargetDescriptor

# Reply returned by a fake miner: bytes to send, or None to stay silent
Responder = Callable[[int, bytes], Optional[bytes]]


class FakeMiner:
    """Handle to a running fake miner API server."""

    def __init__(self):
        self.port: int = 0
        self.triggers: list[bytes] = []
        self.connections = 0
        self.closed = 0


@pytest.fixture
async def miner_server():
    """
    Factory for fake miner API servers.

    The responder gets the 1-based connection index and the trigger bytes
    and returns the reply. A None reply holds the connection open without
    answering until the client hangs up.
    """
    servers = []

    async def _start(responder: Responder) -> FakeMiner:
        miner = FakeMiner()

        async def handle(reader, writer):
            miner.connections += 1
            index = miner.connections
            trigger = await reader.read(1)
            miner.triggers.append(trigger)

            reply = responder(index, trigger)
            if reply is None:
                await reader.read()
            else:
                writer.write(reply)
                await writer.drain()

            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            miner.closed += 1

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        servers.append(server)
        miner.port = server.sockets[0].getsockname()[1]
        return miner

    yield _start

    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def make_target():
    """Factory for descriptors pointing at the local host."""

    def _make(port: int, timeout: float = 0.5) -> TargetDescriptor:
        return TargetDescriptor(
            address="127.0.0.1",
            port=port,
            timeout=timeout,
            interval=3600,
            mark_down_after=3,
            retry_after_down=86400,
        )

    return _make


class RPCBackend:
    """Scripted JSON-RPC wallet backend."""

    def __init__(self):
        self.results: dict = {}
        self.errors: dict = {}
        self.requests: list[dict] = []
        self.status = 200
        self.raw_body: Optional[str] = None
        self.delay = 0.0
        self.url = ""

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.json()
        self.requests.append(body)

        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status != 200:
            return web.Response(status=self.status, text="wallet exploded")
        if self.raw_body is not None:
            return web.Response(text=self.raw_body)

        method = body.get("method")
        if method in self.errors:
            return web.json_response(
                {"jsonrpc": "2.0", "id": body.get("id"), "error": self.errors[method]}
            )
        return web.json_response(
            {"jsonrpc": "2.0", "id": body.get("id"), "result": self.results.get(method)}
        )


@pytest.fixture
async def rpc_backend():
    """Running aiohttp server acting as the wallet node."""
    backend = RPCBackend()
    app = web.Application()
    app.router.add_post("/", backend.handle)

    server = TestServer(app)
    await server.start_server()
    backend.url = str(server.make_url("/"))

    yield backend

    await server.close()


@pytest.fixture
def bus():
    return EventBus()
