"""
Miner Monitor.

Watches a fleet of crypto-miner API endpoints and a wallet JSON-RPC node,
keeps the last observed state of each, and publishes every change on an
in-process event bus that feeds the live dashboard.
"""

__version__ = "0.1.0"
