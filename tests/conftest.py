"""
conftest.py - Shared pytest fixtures for deficity tests

Provides common fixtures used across unit and functional tests:
- Fast engine configuration (millisecond polls and deadlines)
- Building factories
- Stores (empty, with a town hall)
- Simulated ledgers (empty, with an opened city)
- A controllable clock
"""

import pytest
from decimal import Decimal

from deficity import (
    GridStateStore, SimulatedChain, StaticPricingSource, SyncConfig,
    create_town_hall_call,
)

from tests.helpers import FakeClock, OWNER, make_building


# =============================================================================
# CONFIGURATION
# =============================================================================

@pytest.fixture
def fast_config():
    """Millisecond-scale timings; no background timer."""
    return SyncConfig(
        poll_interval=0.002,
        confirmation_timeout=1.0,
        max_poll_errors=3,
        max_submit_attempts=3,
        backoff_base=0.001,
        backoff_cap=0.004,
        refresh_interval=0,
        pending_ttl=60.0,
    )


@pytest.fixture
def prices():
    return StaticPricingSource({'ETH': Decimal("3000"), 'USDC': Decimal("1")})


# =============================================================================
# STORES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Empty 13x13 store for OWNER."""
    return GridStateStore(owner=OWNER, clock=clock)


@pytest.fixture
def city_store(store):
    """Store holding a confirmed town hall (#1) at (6, 6)."""
    store.replace_confirmed([make_building(1, 6, 6, "townhall")])
    return store


# =============================================================================
# SIMULATED LEDGERS
# =============================================================================

@pytest.fixture
def chain():
    """Empty simulated ledger that includes transactions immediately."""
    return SimulatedChain()


@pytest.fixture
def city_chain(chain):
    """Simulated ledger where OWNER already has a town hall (#1) at (6, 6)."""
    receipt = chain.execute_now(OWNER, create_town_hall_call(6, 6))
    assert receipt.success
    return chain
