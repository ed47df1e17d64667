"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from accrual.active_set import ActiveSet
from accrual.clock import ManualClock
from accrual.config import LedgerConfig
from accrual.journal import TransactionScope
from accrual.ledger import AccrualLedger
from accrual.providers import ProviderLedger
from accrual.subscribers import SubscriberLedger
from custody.transfer import InMemoryTreasury

PERIOD = 2_592_000
START = 1_700_000_000


@pytest.fixture
def clock():
    """Manual clock pinned to a fixed start time."""
    return ManualClock(start=START)


@pytest.fixture
def config():
    """Default limits: 30-day period, 200 providers, 3-14 per subscriber."""
    return LedgerConfig(min_fee=10)


@pytest.fixture
def treasury():
    """Treasury that lets any account pay."""
    return InMemoryTreasury(unlimited_wallets=True)


@pytest.fixture
def ledger(config, clock, treasury):
    """In-memory ledger without persistence."""
    return AccrualLedger(config=config, clock=clock, transfer=treasury)


@pytest.fixture
def scope():
    return TransactionScope()


@pytest.fixture
def provider_ledger(config, clock, scope):
    """Standalone ProviderLedger sharing a transaction scope."""
    return ProviderLedger(config, clock, ActiveSet(scope), scope)


@pytest.fixture
def subscriber_ledger(config, clock, provider_ledger, scope):
    return SubscriberLedger(config, clock, provider_ledger, scope)


def register_providers(ledger, count, fee=100, owner_prefix="provider"):
    """Register `count` providers, each owned by `{owner_prefix}-{n}`."""
    return [
        ledger.register_provider(f"{owner_prefix}-{n}", f"{owner_prefix}-key-{n}", fee)
        for n in range(1, count + 1)
    ]
