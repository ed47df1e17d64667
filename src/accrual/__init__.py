"""
Accrual Ledger - Core Module

Multi-tenant accrual billing: providers earn per subscriber per billing
period, accrued per second and settled before every mutation that changes
the rate. Subscribers prepay and their consumption is inferred on demand.
"""

from .active_set import ActiveSet
from .clock import Clock, ManualClock, SystemClock
from .config import DEFAULT_BILLING_PERIOD_SECONDS, LedgerConfig
from .coordinator import MembershipCoordinator
from .errors import LedgerError
from .events import EventBus, LedgerEvent
from .handles import HandleSequence
from .journal import Journal, TransactionScope
from .ledger import AccrualLedger
from .providers import Provider, ProviderLedger, RegistrationKeys
from .subscribers import Subscriber, SubscriberLedger, SubscriptionPlan

__all__ = [
    "AccrualLedger",
    "ActiveSet",
    "Clock",
    "ManualClock",
    "SystemClock",
    "DEFAULT_BILLING_PERIOD_SECONDS",
    "LedgerConfig",
    "MembershipCoordinator",
    "LedgerError",
    "EventBus",
    "LedgerEvent",
    "HandleSequence",
    "Journal",
    "TransactionScope",
    "Provider",
    "ProviderLedger",
    "RegistrationKeys",
    "Subscriber",
    "SubscriberLedger",
    "SubscriptionPlan",
]
