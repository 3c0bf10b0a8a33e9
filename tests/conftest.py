"""
conftest.py - Shared pytest fixtures for loan registry tests

Provides common fixtures used across unit, conformance and functional tests:
- A ledger-backed market (ledger, NFT collection, payment rail, registry)
- A registry wired to in-memory fakes
"""

import pytest

from nftloan import LoanRegistry

from tests.fakes import FakeClock, FakeCustodian, FakeRail
from tests.market import make_market


# =============================================================================
# LEDGER-BACKED FIXTURES
# =============================================================================

@pytest.fixture
def market():
    """Fresh market: alice owns punks 7 and 8, bob owns 9, everyone holds 10_000 ETH."""
    return make_market()


@pytest.fixture
def ledger(market):
    return market.ledger


@pytest.fixture
def punks(market):
    return market.punks


@pytest.fixture
def rail(market):
    return market.rail


@pytest.fixture
def registry(market):
    return market.registry


# =============================================================================
# FAKE-BACKED FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def custodian():
    return FakeCustodian({7: "alice", 8: "alice", 9: "bob"})


@pytest.fixture
def fake_rail():
    return FakeRail(balances={"alice": 1_000, "bob": 1_000, "carol": 1_000})


@pytest.fixture
def fake_registry(custodian, fake_rail, clock):
    return LoanRegistry({"punks": custodian}, fake_rail, clock)
