"""
JSON-RPC client for the wallet node.

Wraps the four calls the wallet monitor chains together:
    getblockcount -> getwalletaccountscount -> getwalletcoins -> getblocks

There are no retries here: a failed call fails the current chain run and the
monitor tries again on its next tick.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)


class WalletRPCError(Exception):
    """Wallet RPC call failed (transport, HTTP status or RPC error body)."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class WalletRPCClient:
    """
    Async JSON-RPC 2.0 client for a single wallet endpoint.

    Usage:
        async with WalletRPCClient("http://127.0.0.1:4003") as client:
            height = await client.get_block_count()
            block = await client.get_latest_block()
    """

    def __init__(
        self,
        url: str,
        b58_pubkey: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize the client.

        Args:
            url: Wallet RPC address, e.g. http://127.0.0.1:4003
            b58_pubkey: Scope account/balance queries to this key (optional)
            session: Optional aiohttp session (created if not provided)
            timeout: Request timeout in seconds
        """
        self._url = url
        self._b58_pubkey = b58_pubkey
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ids = itertools.count(1)

    @property
    def url(self) -> str:
        return self._url

    async def __aenter__(self) -> "WalletRPCClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session if we own it."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Issue one JSON-RPC call.

        Args:
            method: RPC method name
            params: Optional named parameters

        Returns:
            The "result" member of the response

        Raises:
            WalletRPCError: On transport, HTTP or RPC errors
            asyncio.CancelledError: When the task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
        }
        if params is not None:
            payload["params"] = params

        try:
            async with self._session.post(self._url, json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    raise WalletRPCError(
                        f"HTTP {response.status} from wallet: {text[:200]}",
                        status_code=response.status,
                    )
                body = await response.json(content_type=None)

        except asyncio.TimeoutError:
            raise WalletRPCError(f"Wallet request timed out ({method})")

        except asyncio.CancelledError:
            logger.debug(f"Wallet request cancelled ({method})")
            raise

        except aiohttp.ClientError as e:
            raise WalletRPCError(f"Wallet not reachable: {e}")

        except ValueError as e:
            raise WalletRPCError(f"Invalid wallet response ({method}): {e}")

        if not isinstance(body, dict):
            raise WalletRPCError(f"Invalid wallet response ({method})")

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise WalletRPCError(
                    str(error.get("message", error)),
                    code=error.get("code"),
                )
            raise WalletRPCError(str(error))

        return body.get("result")

    def _key_params(self) -> Optional[dict[str, Any]]:
        if self._b58_pubkey:
            return {"b58_pubkey": self._b58_pubkey}
        return None

    async def get_block_count(self) -> int:
        """Current block height."""
        return await self.call("getblockcount")

    async def get_accounts_count(self) -> int:
        """Number of wallet accounts (scoped to b58_pubkey if set)."""
        return await self.call("getwalletaccountscount", self._key_params())

    async def get_balance(self) -> float:
        """Wallet balance (scoped to b58_pubkey if set)."""
        return await self.call("getwalletcoins", self._key_params())

    async def get_latest_block(self) -> Any:
        """The most recent block object."""
        result = await self.call("getblocks", {"last": 1})
        if isinstance(result, list):
            return result[0] if result else None
        return result
