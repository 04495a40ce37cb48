"""
Test fixtures for the monitoring layer.
"""

import pytest

from miner_monitor.core.events import EventBus
from miner_monitor.core.models import (
    MinerMetrics,
    TargetDefaults,
    TargetDescriptor,
    TargetState,
    WalletState,
)
from miner_monitor.monitoring.dashboard import DashboardState


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def dashboard_state(bus):
    state = DashboardState(bus)
    state.attach()
    yield state
    state.detach()


@pytest.fixture
def healthy_target():
    """A target that just answered a poll."""
    state = TargetState(
        descriptor=TargetDescriptor.from_defaults("10.0.0.1", TargetDefaults())
    )
    state.apply_success(MinerMetrics(hashrate=900.0, accepted=12), now=1000)
    return state


@pytest.fixture
def synced_wallet():
    wallet = WalletState()
    wallet.apply_success(500, 2, 42.0, {"height": 500}, now=1000)
    return wallet
