"""
State models for monitored targets and the wallet.

These models hold the last observed values only (no history):
- TargetDescriptor: immutable probe settings for one miner address
- TargetState: observable status and metrics of one miner
- WalletState: observable status of the wallet node

Mutation goes through the transition methods (apply_success, apply_failure,
...) so the metrics invariant holds: metrics are only meaningful while the
status is SUCCESS, and are zeroed when a failure marks the target down.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


def now_ts() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


class TargetStatus(str, Enum):
    """Status of a monitored miner."""
    INIT = "init"
    SUCCESS = "success"
    ERROR = "error"
    MAYBE_DOWN = "maybe_down"
    BOOTING = "booting"


class WalletStatus(str, Enum):
    """Status of the wallet node."""
    INIT = "init"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TargetDefaults:
    """Probe settings shared by every target a config section produces."""
    port: int = 7111
    timeout: int = 3
    interval: int = 10
    mark_down_after: int = 20
    retry_after_down: int = 600


@dataclass(frozen=True)
class TargetDescriptor:
    """
    Probe settings for a single miner.

    Attributes:
        address: IPv4 address, also the key of the target map
        port: Miner API port
        timeout: Idle timeout of one probe in seconds
        interval: Seconds between polls while the target is healthy or flaky
        mark_down_after: Consecutive failures before the target is marked down
        retry_after_down: Seconds between polls while marked down
    """
    address: str
    port: int
    timeout: int
    interval: int
    mark_down_after: int
    retry_after_down: int

    @classmethod
    def from_defaults(cls, address: str, defaults: TargetDefaults) -> "TargetDescriptor":
        """Build a descriptor for address using a section's defaults."""
        return cls(
            address=address,
            port=defaults.port,
            timeout=defaults.timeout,
            interval=defaults.interval,
            mark_down_after=defaults.mark_down_after,
            retry_after_down=defaults.retry_after_down,
        )


@dataclass(frozen=True)
class MinerMetrics:
    """Metrics snapshot reported by a miner's API."""
    hashrate: float = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    uptime: int = 0
    extra_payload: str = ""
    stratum_server: str = ""
    stratum_user: str = ""
    diff: float = 0.0

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "MinerMetrics":
        """
        Build metrics from the miner's JSON response.

        Some miner builds misspell the stratum keys as "statum.*",
        both spellings are accepted.
        """
        return cls(
            hashrate=data.get("speed", 0) or 0,
            accepted=data.get("accepted", 0) or 0,
            rejected=data.get("rejected", 0) or 0,
            failed=data.get("failed", 0) or 0,
            uptime=data.get("uptime", 0) or 0,
            extra_payload=data.get("extrapayload", "") or "",
            stratum_server=(
                data.get("stratum.server") or data.get("statum.server") or ""
            ),
            stratum_user=(
                data.get("stratum.user") or data.get("statum.user") or ""
            ),
            diff=data.get("diff", 0.0) or 0.0,
        )


@dataclass
class TargetState:
    """
    Observable state of one miner.

    Exactly one TargetState exists per address. The scheduler owns the
    consecutive error counter and timers; this record only holds what
    consumers see.
    """
    descriptor: TargetDescriptor
    status: TargetStatus = TargetStatus.INIT
    last_refresh: int = field(default_factory=now_ts)
    error_message: Optional[str] = None
    metrics: MinerMetrics = field(default_factory=MinerMetrics)
    wallet_connected: bool = False
    wallet_connected_time: int = 0

    @property
    def address(self) -> str:
        return self.descriptor.address

    def apply_success(self, metrics: MinerMetrics, now: Optional[int] = None) -> None:
        """Record a successful probe, replacing the metrics snapshot in full."""
        self.status = TargetStatus.SUCCESS
        self.error_message = None
        self.metrics = metrics
        self.last_refresh = now if now is not None else now_ts()

    def apply_failure(
        self,
        status: TargetStatus,
        message: str,
        clear: bool,
        now: Optional[int] = None,
    ) -> None:
        """
        Record a failed probe.

        Args:
            status: Classification returned by the probe (ERROR, BOOTING, ...)
            message: Diagnostic shown to consumers
            clear: Zero the metrics snapshot (target is marked down)
        """
        self.status = status
        self.error_message = message
        self.last_refresh = now if now is not None else now_ts()
        if clear:
            self.clear()

    def clear(self) -> None:
        """Zero the metrics snapshot."""
        self.metrics = MinerMetrics()

    def mark_wallet_connected(self, now: Optional[int] = None) -> None:
        self.wallet_connected = True
        self.wallet_connected_time = now if now is not None else now_ts()

    def mark_wallet_disconnected(self) -> None:
        self.wallet_connected = False
        self.wallet_connected_time = 0

    def to_dict(self) -> dict[str, Any]:
        """Flat serialization for dashboard consumers."""
        d = self.descriptor
        m = self.metrics
        return {
            "ip": d.address,
            "port": d.port,
            "timeout": d.timeout,
            "interval": d.interval,
            "mark_down_after": d.mark_down_after,
            "retry_after_down": d.retry_after_down,
            "state": self.status.value,
            "hashrate": m.hashrate,
            "accepted": m.accepted,
            "rejected": m.rejected,
            "failed": m.failed,
            "uptime": m.uptime,
            "extra_payload": m.extra_payload,
            "stratum_server": m.stratum_server,
            "stratum_user": m.stratum_user,
            "diff": m.diff,
            "error_message": self.error_message,
            "last_refresh": self.last_refresh,
            "wallet_connected": self.wallet_connected,
            "wallet_connected_time": self.wallet_connected_time,
        }


@dataclass
class WalletState:
    """
    Observable state of the wallet node.

    Created once at startup and mutated only by the WalletMonitor.
    """
    ip: str = "127.0.0.1"
    port: int = 4003
    interval: int = 10
    b58_pubkey: str = ""
    status: WalletStatus = WalletStatus.INIT
    active_block: Optional[int] = None
    number_of_accounts: int = 0
    balance: float = 0
    block: Optional[Any] = None
    error_message: Optional[str] = None
    last_refresh: int = field(default_factory=now_ts)

    def apply_success(
        self,
        block_count: int,
        number_of_accounts: int,
        balance: float,
        block: Any,
        now: Optional[int] = None,
    ) -> None:
        """Record a completed chain run."""
        self.status = WalletStatus.SUCCESS
        self.error_message = None
        self.active_block = block_count
        self.number_of_accounts = number_of_accounts
        self.balance = balance
        self.block = block
        self.last_refresh = now if now is not None else now_ts()

    def apply_error(self, message: str, now: Optional[int] = None) -> None:
        """
        Record a failed chain run.

        The active block is reset so the next tick runs the full chain
        even if the block count has not moved. The block is cleared to None,
        not to a zero height.
        """
        self.status = WalletStatus.ERROR
        self.error_message = message
        self.active_block = None
        self.number_of_accounts = 0
        self.balance = 0
        self.block = None
        self.last_refresh = now if now is not None else now_ts()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "port": self.port,
            "interval": self.interval,
            "b58_pubkey": self.b58_pubkey,
            "state": self.status.value,
            "active_block": self.active_block,
            "number_of_accounts": self.number_of_accounts,
            "balance": self.balance,
            "block": self.block,
            "error_message": self.error_message,
            "last_refresh": self.last_refresh,
        }


def with_defaults(defaults: TargetDefaults, **overrides: Any) -> TargetDefaults:
    """Copy defaults, replacing any non-None override."""
    return replace(defaults, **{k: v for k, v in overrides.items() if v is not None})
