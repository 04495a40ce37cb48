"""
Target scheduler - per-target polling with bounded retry/backoff.

Each target is polled on its own timer. A poll's outcome drives a small state
machine:

    success                    -> errors = 0, SUCCESS, next poll after interval
    failure, errors < limit    -> status from probe, metrics kept,
                                  next poll after interval
    failure, errors >= limit   -> status from probe, metrics cleared,
                                  next poll after retry_after_down

Polls are sequential per target (the next timer is armed only when the
previous probe has resolved) and parallel across targets.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from .events import TOPIC_SERVER_REFRESH, EventBus
from .models import MinerMetrics, TargetDefaults, TargetDescriptor, TargetState, TargetStatus
from .patterns import expand_pattern

logger = logging.getLogger(__name__)


class Probe(Protocol):
    """What the scheduler needs from a probe transport."""

    async def probe(self, target: TargetDescriptor) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class Discovery:
    """A discovery pattern and the settings for every address it yields."""
    pattern: str
    defaults: TargetDefaults = TargetDefaults()


@dataclass
class PendingPoll:
    """A scheduled poll that has not fired yet."""
    fire_at: float
    delay: float
    handle: asyncio.TimerHandle


class PollTimers:
    """
    Owns the pending poll of every target.

    Scheduling a poll for a key cancels the key's previous pending poll, so
    there is never more than one timer per target.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingPoll] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], Any]) -> PendingPoll:
        """Arm a timer for key, replacing any pending one."""
        self.cancel_pending(key)

        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, key, callback)
        pending = PendingPoll(fire_at=loop.time() + delay, delay=delay, handle=handle)
        self._pending[key] = pending
        return pending

    def _fire(self, key: str, callback: Callable[[], Any]) -> None:
        self._pending.pop(key, None)
        callback()

    def cancel_pending(self, key: str) -> bool:
        """Cancel key's pending timer. Returns whether one was pending."""
        pending = self._pending.pop(key, None)
        if pending is None:
            return False
        pending.handle.cancel()
        return True

    def pending(self, key: str) -> Optional[PendingPoll]:
        return self._pending.get(key)

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self.cancel_pending(key)

    def __len__(self) -> int:
        return len(self._pending)


class TargetScheduler:
    """
    Owns the target map and polls every target on its own timer.

    Usage:
        scheduler = TargetScheduler(
            bus=bus,
            probe=MinerProbe(),
            discoveries=[Discovery("10.0.0.(1-20)")],
            servers=[TargetDescriptor(...)],
        )
        scheduler.start()       # polls every target once, immediately
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        bus: EventBus,
        probe: Probe,
        discoveries: Iterable[Discovery] = (),
        servers: Iterable[TargetDescriptor] = (),
    ):
        """
        Build the initial target map.

        Discovery patterns are expanded first, explicit servers are laid
        over them, so an explicit entry wins on an address collision.

        Raises:
            PatternError: If a discovery pattern is malformed
        """
        self._bus = bus
        self._probe = probe
        self._timers = PollTimers()

        self._targets: dict[str, TargetState] = {}
        self._error_counts: dict[str, int] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        # Incremented per poll; a result whose generation is stale is dropped
        self._generations: dict[str, int] = {}
        self._running = False

        for discovery in discoveries:
            for address in expand_pattern(discovery.pattern):
                self._add(TargetDescriptor.from_defaults(address, discovery.defaults))

        for descriptor in servers:
            self._add(descriptor)

    def _add(self, descriptor: TargetDescriptor) -> TargetState:
        state = TargetState(descriptor=descriptor)
        self._targets[descriptor.address] = state
        self._error_counts[descriptor.address] = 0
        return state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def targets(self) -> dict[str, TargetState]:
        """Snapshot of the target map (address -> state)."""
        return dict(self._targets)

    @property
    def timers(self) -> PollTimers:
        return self._timers

    def get(self, address: str) -> Optional[TargetState]:
        return self._targets.get(address)

    def error_count(self, address: str) -> int:
        """Consecutive failed polls for address."""
        return self._error_counts.get(address, 0)

    def register(self, descriptor: TargetDescriptor) -> tuple[TargetState, bool]:
        """
        Add a target unless its address is already known.

        Returns:
            (state, created) - the existing state and False if the address
            was already registered
        """
        existing = self._targets.get(descriptor.address)
        if existing is not None:
            return existing, False

        logger.info(f"Registered new target {descriptor.address}:{descriptor.port}")
        return self._add(descriptor), True

    def start(self) -> None:
        """Poll every target once, immediately."""
        if self._running:
            logger.warning("TargetScheduler already running")
            return

        self._running = True
        logger.info(f"Starting target scheduler ({len(self._targets)} targets)")
        for address in list(self._targets):
            self.poll_now(address)

    async def stop(self) -> None:
        """Cancel all timers and in-flight polls."""
        if not self._running:
            return

        logger.info("Stopping target scheduler...")
        self._running = False
        self._timers.cancel_all()

        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        logger.info("Target scheduler stopped")

    def poll_now(self, address: str) -> Optional[asyncio.Task]:
        """
        Poll address immediately, bypassing its timer.

        The pending timer is cancelled. A poll still in flight for the same
        address is cancelled; should it finish anyway, its result is
        discarded by generation.
        """
        if not self._running:
            logger.debug(f"Scheduler not running, ignoring poll for {address}")
            return None
        if address not in self._targets:
            logger.warning(f"Poll requested for unknown target {address}")
            return None

        self._timers.cancel_pending(address)
        previous = self._in_flight.get(address)
        if previous is not None and previous is not asyncio.current_task():
            previous.cancel()
        task = asyncio.create_task(self.poll(address), name=f"poll:{address}")
        self._in_flight[address] = task
        task.add_done_callback(lambda t, a=address: self._forget(a, t))
        return task

    def _forget(self, address: str, task: asyncio.Task) -> None:
        if self._in_flight.get(address) is task:
            del self._in_flight[address]

    async def poll(self, address: str) -> None:
        """Probe one target and apply the outcome."""
        state = self._targets[address]
        generation = self._generations.get(address, 0) + 1
        self._generations[address] = generation

        try:
            data = await self._probe.probe(state.descriptor)
            metrics = MinerMetrics.from_response(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._generations.get(address) != generation:
                logger.debug(f"Discarding superseded failure for {address}: {e}")
                return
            status = getattr(e, "status", TargetStatus.ERROR)
            self._on_failure(state, status, str(e) or e.__class__.__name__)
            return

        if self._generations.get(address) != generation:
            logger.debug(f"Discarding superseded result for {address}")
            return
        self._on_success(state, metrics)

    def _on_success(self, state: TargetState, metrics: MinerMetrics) -> None:
        address = state.address
        if self._error_counts.get(address, 0):
            logger.info(f"Target {address} recovered")
        self._error_counts[address] = 0

        state.apply_success(metrics)
        logger.debug(f"Target {address}: {metrics.hashrate} H/s")

        self._bus.publish(TOPIC_SERVER_REFRESH, state)
        self._schedule(state, state.descriptor.interval)

    def _on_failure(self, state: TargetState, status: TargetStatus, message: str) -> None:
        address = state.address
        descriptor = state.descriptor

        count = self._error_counts.get(address, 0) + 1
        self._error_counts[address] = count

        if count >= descriptor.mark_down_after:
            if count == descriptor.mark_down_after:
                logger.warning(
                    f"Target {address} marked down after {count} failures: {message}"
                )
            state.apply_failure(status, message, clear=True)
            delay = descriptor.retry_after_down
        else:
            logger.info(
                f"Target {address} failed ({count}/{descriptor.mark_down_after}): {message}"
            )
            state.apply_failure(status, message, clear=False)
            delay = descriptor.interval

        self._bus.publish(TOPIC_SERVER_REFRESH, state)
        self._schedule(state, delay)

    def _schedule(self, state: TargetState, delay: float) -> None:
        if not self._running:
            return
        address = state.address
        self._timers.schedule(address, delay, lambda: self.poll_now(address))
