"""
WalletMonitor - chained polling of the wallet node.

Each tick runs four RPC stages in order, each gated on the previous one:

    block count -> account count -> balance -> latest block

If the block count equals the stored active block the chain stops after the
first stage and nothing is published: between blocks nothing else can have
changed. Any failing stage aborts the chain, puts the wallet into ERROR and
publishes the error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from .events import TOPIC_WALLET_REFRESH, EventBus
from .models import WalletState

logger = logging.getLogger(__name__)


class WalletClient(Protocol):
    """What the monitor needs from a wallet RPC client."""

    async def get_block_count(self) -> int: ...

    async def get_accounts_count(self) -> int: ...

    async def get_balance(self) -> float: ...

    async def get_latest_block(self) -> Any: ...


class WalletMonitor:
    """
    Polls the wallet on a fixed interval.

    Usage:
        monitor = WalletMonitor(bus, client, WalletState(), interval=10)
        await monitor.start()   # first refresh runs immediately
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        bus: EventBus,
        client: WalletClient,
        state: WalletState,
        interval: float = 10.0,
    ):
        self._bus = bus
        self._client = client
        self._state = state
        self._interval = interval

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> WalletState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            logger.warning("WalletMonitor already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="wallet_monitor")
        logger.info(f"Started wallet monitor (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Wallet monitor stopped")

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            started = loop.time()
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in wallet refresh: {e}")

            # Runs start on a fixed period, however long the chain took
            remaining = max(0.0, self._interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

    async def refresh(self) -> bool:
        """
        Run one chain.

        Returns:
            True if a refresh event was published
        """
        try:
            block_count = await self._client.get_block_count()
            if block_count == self._state.active_block:
                logger.debug(f"Wallet block unchanged at {block_count}")
                return False

            accounts = await self._client.get_accounts_count()
            balance = await self._client.get_balance()
            block = await self._client.get_latest_block()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Wallet refresh failed: {message}")
            self._state.apply_error(message)
            self._bus.publish(TOPIC_WALLET_REFRESH, self._state)
            return True

        self._state.apply_success(block_count, accounts, balance, block)
        logger.info(
            f"Wallet at block {block_count}: {accounts} accounts, balance {balance}"
        )
        self._bus.publish(TOPIC_WALLET_REFRESH, self._state)
        return True
