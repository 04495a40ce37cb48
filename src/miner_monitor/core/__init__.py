"""
Core Layer - State, scheduling and event distribution.

This module provides:
    - EventBus: in-process publish/subscribe with hierarchical topics
    - expand_pattern: IPv4 discovery pattern expansion
    - TargetState / WalletState: last observed state of miners and wallet
    - TargetScheduler: per-target polling with retry/backoff
    - WalletMonitor: chained wallet RPC polling with short-circuit
    - RegistrationBridge: registers miners seen on the wallet proxy

Usage:
    from miner_monitor.core import EventBus, TargetScheduler, Discovery

    bus = EventBus()
    scheduler = TargetScheduler(bus, probe, discoveries=[Discovery("10.0.0.(1-9)")])
    scheduler.start()
"""

from .events import (
    TOPIC_PROXY_CONNECTED,
    TOPIC_PROXY_DISCONNECTED,
    TOPIC_SERVER_REFRESH,
    TOPIC_WALLET_REFRESH,
    EventBus,
    topic_matches,
)
from .patterns import PatternError, expand_pattern
from .models import (
    MinerMetrics,
    TargetDefaults,
    TargetDescriptor,
    TargetState,
    TargetStatus,
    WalletState,
    WalletStatus,
)
from .scheduler import Discovery, PollTimers, TargetScheduler
from .wallet_monitor import WalletMonitor
from .registration import ProxyConnection, RegistrationBridge

__all__ = [
    # Events
    "EventBus",
    "topic_matches",
    "TOPIC_SERVER_REFRESH",
    "TOPIC_WALLET_REFRESH",
    "TOPIC_PROXY_CONNECTED",
    "TOPIC_PROXY_DISCONNECTED",
    # Patterns
    "PatternError",
    "expand_pattern",
    # Models
    "MinerMetrics",
    "TargetDefaults",
    "TargetDescriptor",
    "TargetState",
    "TargetStatus",
    "WalletState",
    "WalletStatus",
    # Scheduling
    "Discovery",
    "PollTimers",
    "TargetScheduler",
    "WalletMonitor",
    # Registration
    "ProxyConnection",
    "RegistrationBridge",
]
