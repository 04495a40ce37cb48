"""
FastAPI dashboard for miner and wallet state.

Provides:
    - REST endpoints with the latest snapshot of every target and the wallet
    - WebSocket endpoint that sends full snapshots on connect, then one
      message per refresh event
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from miner_monitor.core.events import TOPIC_SERVER_REFRESH, TOPIC_WALLET_REFRESH, EventBus

logger = logging.getLogger(__name__)

# Per-client backlog; a client that falls further behind loses old deltas
CLIENT_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class DashboardConfig:
    """Where the dashboard listens."""
    host: str = "0.0.0.0"
    port: int = 8080
    ping_interval: float = 30.0


class DashboardState:
    """
    Consumer of refresh events that backs the dashboard.

    Keeps the last serialized snapshot per target address and of the wallet,
    and fans each refresh out to connected WebSocket clients.
    """

    def __init__(self, bus: EventBus):
        self._bus = bus
        self._servers: dict[str, dict[str, Any]] = {}
        self._wallet: Optional[dict[str, Any]] = None
        self._clients: set[asyncio.Queue] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(TOPIC_SERVER_REFRESH, self._on_server_refresh),
            self._bus.subscribe(TOPIC_WALLET_REFRESH, self._on_wallet_refresh),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    @property
    def wallet(self) -> Optional[dict[str, Any]]:
        return self._wallet

    @property
    def servers(self) -> list[dict[str, Any]]:
        return list(self._servers.values())

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def _on_server_refresh(self, topic: str, state: Any) -> None:
        data = state.to_dict()
        self._servers[data["ip"]] = data
        self._broadcast({"event": "servers.refresh", "data": data})

    def _on_wallet_refresh(self, topic: str, state: Any) -> None:
        self._wallet = state.to_dict()
        self._broadcast({"event": topic, "data": self._wallet})

    def _broadcast(self, message: dict[str, Any]) -> None:
        for queue in list(self._clients):
            if queue.full():
                # Drop the oldest delta to make room
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(message)

    def add_client(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
        self._clients.add(queue)
        return queue

    def remove_client(self, queue: asyncio.Queue) -> None:
        self._clients.discard(queue)

    def snapshot(self) -> dict[str, Any]:
        return {"wallet": self._wallet, "servers": self.servers}


def create_dashboard_app(state: DashboardState) -> FastAPI:
    """
    Create the FastAPI dashboard application.

    Args:
        state: The event consumer holding the latest snapshots

    Returns:
        FastAPI application instance
    """
    app = FastAPI(
        title="Miner Monitor",
        description="Live status of monitored miners and the wallet node",
        version="1.0.0",
    )

    @app.get("/")
    async def get_all():
        """Wallet and all targets."""
        return state.snapshot()

    @app.get("/wallet")
    async def get_wallet():
        return state.wallet

    @app.get("/servers")
    async def get_servers():
        return state.servers

    @app.get("/health")
    async def health_check():
        """Health check endpoint for Docker/Kubernetes."""
        return {
            "status": "healthy",
            "servers": len(state.servers),
            "wallet": state.wallet["state"] if state.wallet else None,
        }

    @app.websocket("/ws")
    async def websocket_live(websocket: WebSocket):
        """
        Live state stream.

        Sends wallet.init and servers.init on connect, then one
        wallet.refresh / servers.refresh message per change.
        """
        await websocket.accept()
        queue = state.add_client()
        logger.info(f"Dashboard WebSocket connected (total: {state.client_count})")

        tasks: list[asyncio.Task] = []
        try:
            await websocket.send_json({"event": "wallet.init", "data": state.wallet})
            await websocket.send_json({"event": "servers.init", "data": state.servers})

            tasks = [
                asyncio.create_task(_send_updates(websocket, queue)),
                asyncio.create_task(_wait_disconnect(websocket)),
            ]
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    raise task.exception()
            logger.info("Dashboard WebSocket disconnected")

        except WebSocketDisconnect:
            logger.info("Dashboard WebSocket disconnected")
        except Exception as e:
            logger.error(f"Dashboard WebSocket error: {e}")
        finally:
            state.remove_client(queue)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    return app


async def _send_updates(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _wait_disconnect(websocket: WebSocket) -> None:
    """Return once the client goes away. Incoming messages are ignored."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
