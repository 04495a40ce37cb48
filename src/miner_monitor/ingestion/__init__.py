"""
Ingestion Layer - Network transports.

This module provides:
    - MinerProbe: one-shot TCP probe of a miner's JSON API
    - WalletRPCClient: aiohttp JSON-RPC client for the wallet node
    - WalletProxy: pass-through TCP proxy that reports miner connections

Usage:
    from miner_monitor.ingestion import MinerProbe, WalletRPCClient

    probe = MinerProbe()
    data = await probe.probe(descriptor)

    async with WalletRPCClient("http://127.0.0.1:4003") as client:
        height = await client.get_block_count()
"""

from .probe import MinerBootingError, MinerProbe, MinerProbeError
from .wallet_client import WalletRPCClient, WalletRPCError
from .proxy import ProxyConfig, WalletProxy

__all__ = [
    # Probe
    "MinerProbe",
    "MinerProbeError",
    "MinerBootingError",
    # Wallet RPC
    "WalletRPCClient",
    "WalletRPCError",
    # Proxy
    "ProxyConfig",
    "WalletProxy",
]
