"""
Shared fixtures: a simulated ledger with a controllable clock, funded
accounts and a marketplace service wired to an in-memory content store.
"""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from galerie.core.config import MarketConfig
from galerie.core.ledger import InMemoryLedger, SimulatedSigner
from galerie.core.market import MarketplaceService
from galerie.core.store import InMemoryContentStore
from galerie.crypto import random_address

GENESIS_TIME = 1_700_000_000
FUNDING = Decimal("1000")


class FakeClock:
    """Ledger close time that only moves when a test moves it."""

    def __init__(self, now: int = GENESIS_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@dataclass
class Accounts:
    creator: str
    collector: str
    rival: str
    escrow: str


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    """Fake ledger clock starting at GENESIS_TIME."""
    return FakeClock()


@pytest.fixture
def ledger(clock):
    """Simulated ledger driven by the fake clock."""
    return InMemoryLedger(clock=clock)


@pytest.fixture
def accounts(ledger):
    """Creator, two bidders and the escrow account, each funded."""
    people = Accounts(
        creator=random_address(),
        collector=random_address(),
        rival=random_address(),
        escrow=random_address(),
    )
    for address in (people.creator, people.collector, people.rival, people.escrow):
        ledger.create_account(address, FUNDING)
    return people


@pytest.fixture
def config(accounts):
    """Default configuration with the escrow account set."""
    return MarketConfig(escrow_account=accounts.escrow)


@pytest.fixture
def signer(ledger):
    return SimulatedSigner(ledger)


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def market(ledger, signer, config, content_store):
    """Marketplace service over the simulated ledger."""
    return MarketplaceService(ledger, signer, config, store=content_store)


@pytest.fixture
def token(market, accounts):
    """A token issued by the creator and held by the creator."""
    issued, _ = market.issue_token("myNFT-23", accounts.creator, name="Sunset", image="ipfs://sunset")
    return issued
