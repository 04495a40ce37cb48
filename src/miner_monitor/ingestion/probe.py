"""
TCP line-protocol probe for miner APIs.

The miner API answers a single written byte with one JSON document and
expects the client to hang up afterwards. Every probe runs the full socket
lifecycle once: connect -> write -> read once -> close.

Guarantees:
    - At most one exchange in flight per address. Starting a probe cancels
      the previous exchange for that address (connecting or connected) and
      closes its socket before the new one connects.
    - The connection is closed in every terminal case (data, error, idle
      timeout, watchdog timeout, cancellation).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from miner_monitor.core.models import TargetDescriptor, TargetStatus

logger = logging.getLogger(__name__)

TRIGGER_BYTE = b" "
BOOTING_PAYLOAD = "{}"
READ_BUFFER_SIZE = 65536
DEFAULT_WATCHDOG_MULTIPLIER = 5.0


class MinerProbeError(Exception):
    """A probe failed. status is the classification for the target."""

    status = TargetStatus.ERROR

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class MinerBootingError(MinerProbeError):
    """Miner answered with an empty object: reachable but not ready."""

    status = TargetStatus.BOOTING


class MinerProbe:
    """
    Async probe for miner API endpoints.

    Usage:
        probe = MinerProbe()
        try:
            data = await probe.probe(descriptor)
        except MinerBootingError:
            ...
        except MinerProbeError as e:
            print(e.status, e)
        await probe.close()
    """

    def __init__(
        self,
        watchdog_multiplier: float = DEFAULT_WATCHDOG_MULTIPLIER,
        trigger: bytes = TRIGGER_BYTE,
    ):
        """
        Initialize the probe.

        Args:
            watchdog_multiplier: Hard deadline for a whole probe, as a multiple
                of the target's idle timeout. Backstop for the idle timeouts.
            trigger: Bytes written to request a response (must be non-empty)
        """
        if watchdog_multiplier <= 1:
            raise ValueError(f"watchdog_multiplier must be > 1, got {watchdog_multiplier}")
        if not trigger:
            raise ValueError("trigger must not be empty")

        self._watchdog_multiplier = watchdog_multiplier
        self._trigger = trigger
        self._connections: dict[str, asyncio.StreamWriter] = {}
        self._exchanges: dict[str, asyncio.Task] = {}

    @property
    def open_connections(self) -> set[str]:
        """Addresses with a registered open connection."""
        return set(self._connections)

    @property
    def in_flight(self) -> set[str]:
        """Addresses with an exchange still running."""
        return {a for a, t in self._exchanges.items() if not t.done()}

    async def probe(self, target: TargetDescriptor) -> dict[str, Any]:
        """
        Probe one miner.

        Args:
            target: Descriptor of the miner

        Returns:
            The parsed JSON metrics object

        Raises:
            MinerBootingError: Miner answered "{}"
            MinerProbeError: Connection error, timeout or invalid payload
        """
        address = target.address
        self._supersede(address)

        exchange = asyncio.create_task(self._exchange(target), name=f"probe:{address}")
        self._exchanges[address] = exchange

        watchdog = target.timeout * self._watchdog_multiplier
        try:
            done, _ = await asyncio.wait({exchange}, timeout=watchdog)
        except asyncio.CancelledError:
            exchange.cancel()
            raise
        finally:
            if self._exchanges.get(address) is exchange:
                del self._exchanges[address]

        if exchange not in done:
            logger.warning(f"Watchdog fired for {address} after {watchdog:.1f}s")
            exchange.cancel()
            # Wait for the exchange to release its socket
            await asyncio.gather(exchange, return_exceptions=True)
            raise MinerProbeError("Socket problem.", address=address)

        if exchange.cancelled():
            raise MinerProbeError("Probe cancelled", address=address)

        return self._parse(target, exchange.result())

    def _supersede(self, address: str) -> None:
        """Cancel the running exchange for address and close its socket."""
        previous = self._exchanges.pop(address, None)
        if previous is not None and not previous.done():
            logger.debug(f"Cancelling in-flight probe of {address}")
            previous.cancel()
        self._close_connection(address)

    async def _exchange(self, target: TargetDescriptor) -> bytes:
        """Run connect -> write -> read once -> close."""
        writer: Optional[asyncio.StreamWriter] = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(target.address, target.port),
                timeout=target.timeout,
            )
            self._close_connection(target.address)
            self._connections[target.address] = writer

            writer.write(self._trigger)
            await asyncio.wait_for(writer.drain(), timeout=target.timeout)

            return await asyncio.wait_for(
                reader.read(READ_BUFFER_SIZE),
                timeout=target.timeout,
            )

        except asyncio.TimeoutError:
            raise MinerProbeError(
                f"Server not reachable, timeout after {target.timeout}s",
                address=target.address,
            )

        except OSError as e:
            raise MinerProbeError(str(e) or e.__class__.__name__, address=target.address)

        finally:
            if writer is not None:
                await self._release(target.address, writer)

    async def _release(self, address: str, writer: asyncio.StreamWriter) -> None:
        # Only deregister our own writer: a newer probe may own the slot by now
        if self._connections.get(address) is writer:
            del self._connections[address]

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing connection to {address}: {e}")

    def _close_connection(self, address: str) -> None:
        """Forcibly close a connection left open by a previous probe."""
        writer = self._connections.pop(address, None)
        if writer is None:
            return

        logger.debug(f"Closing stale probe connection to {address}")
        try:
            writer.close()
        except Exception as e:
            logger.debug(f"Error closing stale connection to {address}: {e}")

    def _parse(self, target: TargetDescriptor, payload: bytes) -> dict[str, Any]:
        text = payload.decode("utf-8", errors="replace").strip()

        if not text:
            raise MinerProbeError(
                "Connection closed without a response",
                address=target.address,
            )

        if text == BOOTING_PAYLOAD:
            raise MinerBootingError(
                "Empty response, miner is probably booting, stay tuned...",
                address=target.address,
            )

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MinerProbeError(f"Invalid response: {e}", address=target.address)

        if not isinstance(data, dict):
            raise MinerProbeError(
                f"Invalid response: expected an object, got {type(data).__name__}",
                address=target.address,
            )

        return data

    async def close(self) -> None:
        """Cancel every running exchange and close every registered connection."""
        exchanges = list(self._exchanges.values())
        for address in list(self._exchanges):
            self._supersede(address)
        for address in list(self._connections):
            self._close_connection(address)
        if exchanges:
            await asyncio.gather(*exchanges, return_exceptions=True)
