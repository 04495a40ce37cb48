"""
Tests for the wallet monitor chain.

These tests verify:
- A changed block count runs all four calls and publishes once
- An unchanged block count stops after the first call and publishes nothing
- Any failing stage aborts the chain and publishes the error state
"""

import asyncio

import pytest

from miner_monitor.core.models import WalletStatus
from miner_monitor.core.wallet_monitor import WalletMonitor
from miner_monitor.ingestion.wallet_client import WalletRPCError


@pytest.fixture
def monitor(bus, wallet_client, wallet_state):
    return WalletMonitor(bus, wallet_client, wallet_state, interval=3600)


class TestRefresh:
    """Tests for WalletMonitor.refresh."""

    async def test_first_refresh_runs_full_chain(self, monitor, wallet_client, recorder):
        published = await monitor.refresh()

        assert published is True
        wallet_client.get_block_count.assert_awaited_once()
        wallet_client.get_accounts_count.assert_awaited_once()
        wallet_client.get_balance.assert_awaited_once()
        wallet_client.get_latest_block.assert_awaited_once()

        state = monitor.state
        assert state.status == WalletStatus.SUCCESS
        assert state.active_block == 100
        assert state.number_of_accounts == 3
        assert state.balance == 12.5
        assert state.block == {"height": 100, "hash": "abc"}
        assert recorder.events == [("wallet.refresh", state)]

    async def test_unchanged_block_short_circuits(self, monitor, wallet_client, recorder):
        await monitor.refresh()
        wallet_client.reset_mock()
        recorder.events.clear()

        published = await monitor.refresh()

        assert published is False
        wallet_client.get_block_count.assert_awaited_once()
        wallet_client.get_accounts_count.assert_not_awaited()
        wallet_client.get_balance.assert_not_awaited()
        wallet_client.get_latest_block.assert_not_awaited()
        assert recorder.events == []

    async def test_new_block_runs_chain_again(self, monitor, wallet_client, recorder):
        await monitor.refresh()
        wallet_client.get_block_count.return_value = 101
        wallet_client.get_balance.return_value = 15.0

        published = await monitor.refresh()

        assert published is True
        assert wallet_client.get_latest_block.await_count == 2
        assert monitor.state.active_block == 101
        assert monitor.state.balance == 15.0
        assert len(recorder.events) == 2

    @pytest.mark.parametrize(
        "stage",
        ["get_block_count", "get_accounts_count", "get_balance", "get_latest_block"],
    )
    async def test_failing_stage_aborts_chain(self, monitor, wallet_client, recorder, stage):
        getattr(wallet_client, stage).side_effect = WalletRPCError("Wallet not reachable")

        published = await monitor.refresh()

        assert published is True
        state = monitor.state
        assert state.status == WalletStatus.ERROR
        assert state.error_message == "Wallet not reachable"
        assert state.active_block is None
        assert state.balance == 0
        assert recorder.events == [("wallet.refresh", state)]

        # Later stages were never reached
        stages = ["get_block_count", "get_accounts_count", "get_balance", "get_latest_block"]
        for later in stages[stages.index(stage) + 1:]:
            getattr(wallet_client, later).assert_not_awaited()

    async def test_error_then_same_block_runs_full_chain(self, monitor, wallet_client):
        await monitor.refresh()
        wallet_client.get_balance.side_effect = WalletRPCError("boom")
        wallet_client.get_block_count.return_value = 101
        await monitor.refresh()
        assert monitor.state.status == WalletStatus.ERROR

        wallet_client.get_balance.side_effect = None
        wallet_client.reset_mock()

        published = await monitor.refresh()

        assert published is True
        wallet_client.get_latest_block.assert_awaited_once()
        assert monitor.state.status == WalletStatus.SUCCESS
        assert monitor.state.active_block == 101


class TestLifecycle:
    """Tests for start/stop."""

    async def test_start_refreshes_immediately(self, monitor, wallet_client, settle):
        await monitor.start()
        await settle()

        assert monitor.is_running
        wallet_client.get_block_count.assert_awaited()

        await monitor.stop()
        assert not monitor.is_running

    async def test_polls_on_interval(self, bus, wallet_client, wallet_state):
        monitor = WalletMonitor(bus, wallet_client, wallet_state, interval=0.01)

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert wallet_client.get_block_count.await_count >= 2
        # Block never changed, so only the first tick ran the full chain
        assert wallet_client.get_latest_block.await_count == 1

    async def test_slow_chain_does_not_stretch_interval(
        self, bus, wallet_client, wallet_state
    ):
        loop = asyncio.get_running_loop()
        started_at = []

        async def slow_block_count():
            started_at.append(loop.time())
            await asyncio.sleep(0.08)
            return 100

        wallet_client.get_block_count.side_effect = slow_block_count
        monitor = WalletMonitor(bus, wallet_client, wallet_state, interval=0.1)

        await monitor.start()
        await asyncio.sleep(0.45)
        await monitor.stop()

        assert len(started_at) >= 3
        gaps = [b - a for a, b in zip(started_at, started_at[1:])]
        # Waiting the full interval after each run would space them 0.18s apart
        assert all(gap < 0.15 for gap in gaps)

    async def test_stop_when_not_started(self, monitor):
        await monitor.stop()
        assert not monitor.is_running
