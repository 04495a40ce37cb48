"""
Pass-through TCP proxy in front of the wallet.

Miners point their wallet connection at the proxy instead of the wallet
itself. The proxy forwards bytes unchanged in both directions and announces
each connection on the event bus:

    proxy.connected      once per accepted connection
    proxy.disconnected   once when that connection closes (always after
                         proxy.connected)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from miner_monitor.core.events import (
    TOPIC_PROXY_CONNECTED,
    TOPIC_PROXY_DISCONNECTED,
    EventBus,
)
from miner_monitor.core.models import TargetDefaults
from miner_monitor.core.registration import ProxyConnection

logger = logging.getLogger(__name__)

PIPE_BUFFER_SIZE = 65536


@dataclass(frozen=True)
class ProxyConfig:
    """Where the proxy listens, where it forwards, and target defaults."""
    proxy_ip: str = "0.0.0.0"
    proxy_port: int = 4009
    wallet_ip: str = "127.0.0.1"
    wallet_port: int = 4009
    connect_timeout: float = 10.0
    target_defaults: TargetDefaults = field(default_factory=TargetDefaults)


class WalletProxy:
    """
    Forwards miner <-> wallet traffic and reports connections.

    Usage:
        proxy = WalletProxy(ProxyConfig(proxy_port=4009, wallet_port=4004), bus)
        await proxy.start()
        ...
        await proxy.stop()
    """

    def __init__(self, config: ProxyConfig, bus: EventBus):
        self._config = config
        self._bus = bus
        self._server: Optional[asyncio.AbstractServer] = None
        self._handlers: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """Bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def active_connections(self) -> int:
        return len(self._handlers)

    async def start(self) -> None:
        if self._server is not None:
            logger.warning("WalletProxy already running")
            return

        self._server = await asyncio.start_server(
            self._handle_client,
            host=self._config.proxy_ip,
            port=self._config.proxy_port,
        )
        logger.info(
            f"Wallet proxy listening on {self._config.proxy_ip}:{self.port} -> "
            f"{self._config.wallet_ip}:{self._config.wallet_port}"
        )

    async def stop(self) -> None:
        if self._server is None:
            return

        logger.info("Stopping wallet proxy...")
        self._server.close()

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        await self._server.wait_closed()
        self._server = None
        logger.info("Wallet proxy stopped")

    async def _handle_client(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)

        peer = client_writer.get_extra_info("peername")
        address = peer[0] if peer else "unknown"
        connection = ProxyConnection(address=address, defaults=self._config.target_defaults)

        logger.debug(f"Proxy connection from {address}")
        self._bus.publish(TOPIC_PROXY_CONNECTED, connection)

        upstream_writer: Optional[asyncio.StreamWriter] = None
        pipes: list[asyncio.Task] = []
        try:
            upstream_reader, upstream_writer = await asyncio.wait_for(
                asyncio.open_connection(self._config.wallet_ip, self._config.wallet_port),
                timeout=self._config.connect_timeout,
            )
            pipes = [
                asyncio.create_task(_pipe(client_reader, upstream_writer)),
                asyncio.create_task(_pipe(upstream_reader, client_writer)),
            ]
            # Either side hanging up ends the whole connection
            await asyncio.wait(pipes, return_when=asyncio.FIRST_COMPLETED)

        except asyncio.TimeoutError:
            logger.warning(f"Proxy: wallet connect timed out for {address}")

        except OSError as e:
            logger.warning(f"Proxy: connection error for {address}: {e}")

        finally:
            for pipe in pipes:
                pipe.cancel()
            for result in await asyncio.gather(*pipes, return_exceptions=True):
                if isinstance(result, OSError):
                    logger.debug(f"Proxy: {address} pipe ended with {result}")
            for writer in (upstream_writer, client_writer):
                if writer is not None:
                    await _close(writer)
            self._bus.publish(TOPIC_PROXY_DISCONNECTED, connection)
            logger.debug(f"Proxy connection from {address} closed")
            if task is not None:
                self._handlers.discard(task)


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Copy reader to writer until EOF."""
    while True:
        data = await reader.read(PIPE_BUFFER_SIZE)
        if not data:
            return
        writer.write(data)
        await writer.drain()


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"Proxy: error closing socket: {e}")
