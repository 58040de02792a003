"""
Shared pytest fixtures for the GiftLedger test suite.
"""

import pytest

from giftledger_core.clock import ManualClock
from giftledger_core.custody import InMemoryCustodyService
from giftledger_core.gift import GiftRegistry


@pytest.fixture
def clock():
    """Manual clock starting at t=0."""
    return ManualClock(0)


@pytest.fixture
def custody():
    """Custody service with a funded administrator."""
    svc = InMemoryCustodyService()
    svc.deposit("rAdmin", 10_000)
    return svc


@pytest.fixture
def registry(custody, clock):
    """Registry with invariant checking on."""
    return GiftRegistry(custody, clock, check_invariants=True)


@pytest.fixture
def seeded_registry(registry):
    """Registry holding rAdmin's ledger {rB1: (100, 1000), rB2: (200, 2000)}."""
    registry.initialize("rAdmin", ["rB1", "rB2"], [100, 200], [1000, 2000])
    return registry
