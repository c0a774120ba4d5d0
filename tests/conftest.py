"""
conftest.py - Shared pytest fixtures for marketplace tests

Provides common fixtures used across unit, conformance and functional tests:
- Clock and funded ledger
- Registry wired to the ledger with a separate fee recipient
- Listings in each interesting state (listed, sold, past deadline)
"""

import pytest
from datetime import timedelta

from marketplace import Ledger, LogicalClock, Registry

from tests.helpers import (
    T0, ADMIN, TREASURY, STARTING_BALANCE,
    create_listing, list_and_buy,
)


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Logical clock starting at 2025-01-01."""
    return LogicalClock(T0)


@pytest.fixture
def ledger():
    """Ledger with alice, bob and carol each holding 100,000 MKT."""
    ledger = Ledger("test", verbose=False, test_mode=True)
    for wallet in ("alice", "bob", "carol"):
        ledger.mint(wallet, STARTING_BALANCE)
    return ledger


@pytest.fixture
def circulating():
    """Total issuance of the ledger fixture."""
    return STARTING_BALANCE * 3


@pytest.fixture
def registry(ledger, clock):
    """Registry with default fees, administered by 'admin', paying fees to 'treasury'."""
    return Registry(ledger, clock, admin=ADMIN, fee_recipient=TREASURY, verbose=False)


# =============================================================================
# LISTING FIXTURES
# =============================================================================

@pytest.fixture
def listed(registry):
    """One 1000 MKT electronics listing by alice. Returns (registry, listing_id)."""
    return registry, create_listing(registry)


@pytest.fixture
def sold(registry):
    """One listing by alice bought by bob. Returns (registry, listing_id)."""
    return registry, list_and_buy(registry)


@pytest.fixture
def past_deadline(sold, clock):
    """A sold listing whose 48h delivery window passed one second ago."""
    registry, listing_id = sold
    clock.advance(timedelta(hours=48, seconds=1))
    return registry, listing_id
