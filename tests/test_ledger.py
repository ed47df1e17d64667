"""
Tests for the AccrualLedger Facade

Covers cross-ledger registration and pause, the solvency gate, capacity,
registration keys and the all-or-nothing guarantee of every operation.
"""

import itertools
import threading

import pytest

from accrual.config import LedgerConfig
from accrual.errors import (
    CapacityExceeded,
    FeeTooLow,
    InsufficientDeposit,
    InvalidState,
    KeyAlreadyUsed,
    NotOwner,
    ProviderInactive,
    ProviderNotFound,
    TransferFailed,
    UnknownProviderId,
)
from accrual.ledger import AccrualLedger
from custody.transfer import InMemoryTreasury

from conftest import PERIOD, START, register_providers


class TestProviderOperations:

    def test_register_provider(self, ledger):
        provider_id = ledger.register_provider("alice", "key-1", 100)

        assert provider_id == 1
        assert ledger.is_provider_active(provider_id)
        assert ledger.get_provider_state(provider_id).fee == 100

    def test_key_cannot_be_reused(self, ledger):
        ledger.register_provider("alice", "key-1", 100)
        with pytest.raises(KeyAlreadyUsed):
            ledger.register_provider("bob", "key-1", 100)

    def test_key_stays_used_after_removal(self, ledger):
        provider_id = ledger.register_provider("alice", "key-1", 100)
        ledger.remove_provider(provider_id, "alice")

        with pytest.raises(KeyAlreadyUsed):
            ledger.register_provider("alice", "key-1", 100)

    def test_failed_registration_does_not_consume_key(self, ledger):
        with pytest.raises(FeeTooLow):
            ledger.register_provider("alice", "key-1", 5)

        assert ledger.register_provider("alice", "key-1", 100) == 1

    def test_capacity_limit(self, ledger):
        provider_ids = register_providers(ledger, 200)
        assert provider_ids[-1] == 200

        with pytest.raises(CapacityExceeded):
            ledger.register_provider("late", "late-key", 100)

        assert len(ledger.list_providers()) == 200
        assert ledger.provider_sequence.next_value == 202
        # The key of the failed attempt can still be used later
        assert not ledger.keys.is_used("late-key")

    def test_removal_frees_capacity(self, clock, treasury):
        ledger = AccrualLedger(LedgerConfig(max_providers=3), clock, treasury)
        provider_ids = register_providers(ledger, 3)
        ledger.remove_provider(provider_ids[0], "provider-1")

        assert ledger.register_provider("new", "new-key", 100) == 4

    def test_remove_pays_out_and_deletes(self, ledger, clock, treasury):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD // 2)

        assert ledger.remove_provider(provider_ids[0], "provider-1") == 50
        assert treasury.wallet_balance("provider-1") == 50
        with pytest.raises(ProviderNotFound):
            ledger.get_provider_state(provider_ids[0])
        with pytest.raises(ProviderNotFound):
            ledger.remove_provider(provider_ids[0], "provider-1")

    def test_withdraw(self, ledger, clock, treasury):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD)

        assert ledger.withdraw_provider_earnings(provider_ids[1], "provider-2") == 100
        assert ledger.withdraw_provider_earnings(provider_ids[1], "provider-2") == 0
        assert treasury.wallet_balance("provider-2") == 100
        assert treasury.custody_balance == 500

    def test_default_treasury_pays_beyond_collected_deposits(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD * 3)

        paid = [
            ledger.withdraw_provider_earnings(provider_ids[0], "provider-1"),
            ledger.withdraw_provider_earnings(provider_ids[1], "provider-2"),
        ]
        clock.advance(PERIOD)
        paid.append(ledger.remove_provider(provider_ids[2], "provider-3"))

        assert paid == [300, 300, 400]
        with pytest.raises(ProviderNotFound):
            ledger.get_provider_state(provider_ids[2])

    def test_withdraw_requires_owner(self, ledger):
        provider_id = ledger.register_provider("alice", "key-1", 100)
        with pytest.raises(NotOwner):
            ledger.withdraw_provider_earnings(provider_id, "mallory")

    def test_update_fee_settles_at_old_rate(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD // 2)

        ledger.update_provider_fee(provider_ids[0], "provider-1", 200)
        clock.advance(PERIOD // 2)

        assert ledger.get_provider_live_balance(provider_ids[0]) == 50 + 100

    def test_update_fee_requires_owner(self, ledger):
        provider_id = ledger.register_provider("alice", "key-1", 100)
        with pytest.raises(NotOwner):
            ledger.update_provider_fee(provider_id, "mallory", 1)
        assert ledger.get_provider_state(provider_id).fee == 100


class TestProviderStatus:

    def test_bulk_toggle(self, ledger):
        provider_ids = register_providers(ledger, 3)
        ledger.set_providers_active(provider_ids[:2], False)

        assert [ledger.is_provider_active(p) for p in provider_ids] == [False, False, True]

        ledger.set_providers_active(provider_ids, True)
        assert all(ledger.is_provider_active(p) for p in provider_ids)

    def test_unknown_id_changes_nothing(self, ledger):
        provider_ids = register_providers(ledger, 2)

        with pytest.raises(UnknownProviderId):
            ledger.set_providers_active([provider_ids[0], 99], False)

        assert ledger.is_provider_active(provider_ids[0])

    def test_deactivated_provider_keeps_accruing(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        ledger.set_providers_active([provider_ids[0]], False)
        clock.advance(PERIOD)

        state = ledger.get_provider_state(provider_ids[0])
        assert state.subscriber_count == 1
        assert ledger.get_provider_earnings(provider_ids[0]) == 100


class TestSubscriberRegistration:
    """Attachment and the two-period solvency gate."""

    def test_attaches_to_every_provider(self, ledger):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)

        assert subscriber_id == 1
        assert all(ledger.get_provider_state(p).subscriber_count == 1 for p in provider_ids)
        state = ledger.get_subscriber_state(subscriber_id)
        assert state.provider_ids == tuple(provider_ids)
        assert state.created_date == START

    def test_deposit_must_cover_two_periods(self, ledger):
        provider_ids = register_providers(ledger, 3)

        with pytest.raises(InsufficientDeposit):
            ledger.register_subscriber("bob", 599, "BASIC", provider_ids)
        assert ledger.register_subscriber("bob", 600, "BASIC", provider_ids) == 1

    @pytest.mark.parametrize("size", range(3, 15))
    def test_solvency_gate_every_list_size(self, ledger, size):
        fees = [10 + 7 * n for n in range(14)]
        provider_ids = [
            ledger.register_provider(f"provider-{n}", f"key-{n}", fee)
            for n, fee in enumerate(fees)
        ]
        fee_of = dict(zip(provider_ids, fees))

        for combo in itertools.islice(itertools.combinations(provider_ids, size), 3):
            required = 2 * sum(fee_of[p] for p in combo)
            with pytest.raises(InsufficientDeposit):
                ledger.register_subscriber("bob", required - 1, "BASIC", list(combo))
            ledger.register_subscriber("bob", required, "BASIC", list(combo))

    def test_inactive_provider_rejected_without_mutation(self, ledger):
        provider_ids = register_providers(ledger, 3)
        ledger.set_providers_active([provider_ids[1]], False)

        with pytest.raises(ProviderInactive):
            ledger.register_subscriber("bob", 600, "BASIC", provider_ids)

        assert all(ledger.get_provider_state(p).subscriber_count == 0 for p in provider_ids)
        assert ledger.list_subscribers() == []
        assert ledger.subscriber_sequence.next_value == 1

    def test_removed_provider_rejected(self, ledger):
        provider_ids = register_providers(ledger, 4)
        ledger.remove_provider(provider_ids[3], "provider-4")

        with pytest.raises(ProviderInactive):
            ledger.register_subscriber("bob", 800, "BASIC", provider_ids)

    def test_transfer_failure_rolls_back(self, clock, config):
        ledger = AccrualLedger(config, clock, InMemoryTreasury())
        provider_ids = register_providers(ledger, 3)

        with pytest.raises(TransferFailed):
            ledger.register_subscriber("bob", 600, "BASIC", provider_ids)

        assert all(ledger.get_provider_state(p).subscriber_count == 0 for p in provider_ids)
        assert ledger.list_subscribers() == []
        assert "SubscriberRegistered" not in [e.name for e in ledger.events()]

    def test_funded_payer_is_charged(self, clock, config):
        treasury = InMemoryTreasury()
        treasury.fund("bob", 1000)
        ledger = AccrualLedger(config, clock, treasury)
        provider_ids = register_providers(ledger, 3)

        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)

        assert treasury.wallet_balance("bob") == 400
        assert treasury.custody_balance == 600


class TestPause:

    def test_pause_stops_future_accrual(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD)

        ledger.pause_subscription(subscriber_id, "bob")
        clock.advance(PERIOD)

        state = ledger.get_provider_state(provider_ids[0])
        assert state.subscriber_count == 0
        assert ledger.get_provider_live_balance(provider_ids[0]) == 100

    def test_pause_skips_inactive_providers(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        ledger.set_providers_active([provider_ids[2]], False)

        ledger.pause_subscription(subscriber_id, "bob")

        counts = [ledger.get_provider_state(p).subscriber_count for p in provider_ids]
        assert counts == [0, 0, 1]

    def test_pause_skips_removed_providers(self, ledger):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        ledger.remove_provider(provider_ids[0], "provider-1")

        ledger.pause_subscription(subscriber_id, "bob")

        assert ledger.get_subscriber_state(subscriber_id).is_paused

    def test_count_conflict_rolls_back_whole_pause(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        ledger.providers.peek(provider_ids[2]).subscriber_count = 0
        clock.advance(PERIOD)

        with pytest.raises(InvalidState):
            ledger.pause_subscription(subscriber_id, "bob")

        assert ledger.get_subscriber_state(subscriber_id).is_paused is False
        first = ledger.get_provider_state(provider_ids[0])
        assert first.subscriber_count == 1
        assert first.balance == 0
        assert first.last_settled == START


class TestAtomicity:

    def test_disbursement_failure_keeps_provider(self, clock, config):
        treasury = InMemoryTreasury()
        treasury.fund("bob", 600)
        ledger = AccrualLedger(config, clock, treasury)
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)

        # Earnings outgrow custody after ten periods
        clock.advance(PERIOD * 10)
        with pytest.raises(TransferFailed):
            ledger.remove_provider(provider_ids[0], "provider-1")

        assert ledger.is_provider_active(provider_ids[0])
        state = ledger.get_provider_state(provider_ids[0])
        assert state.balance == 0
        assert state.last_settled == START
        assert treasury.custody_balance == 600

    def test_concurrent_withdrawals_conserve_earnings(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        clock.advance(PERIOD)
        paid = []

        def worker():
            paid.append(ledger.withdraw_provider_earnings(provider_ids[0], "provider-1"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(paid) == 100
        assert paid.count(100) == 1


class TestEvents:

    def test_committed_operations_emit_events(self, ledger, clock):
        provider_ids = register_providers(ledger, 3)
        subscriber_id = ledger.register_subscriber("bob", 600, "BASIC", provider_ids)
        ledger.deposit_to_subscription(subscriber_id, "bob", 10)
        ledger.pause_subscription(subscriber_id, "bob")

        names = [e.name for e in ledger.events()]
        assert names == [
            "ProviderRegistered",
            "ProviderRegistered",
            "ProviderRegistered",
            "SubscriberRegistered",
            "SubscriptionDeposited",
            "SubscriptionPaused",
        ]

    def test_on_event_skips_failed_operations(self, ledger):
        seen = []
        ledger.on_event(seen.append)

        with pytest.raises(FeeTooLow):
            ledger.register_provider("alice", "key-1", 1)
        ledger.register_provider("alice", "key-2", 100)

        assert [e.name for e in seen] == ["ProviderRegistered"]
        assert seen[0].to_dict()["provider_id"] == 1

    def test_event_logging_does_not_break_operations(self, ledger):
        provider_id = ledger.register_provider("alice", "key-1", 100)

        event = ledger.events()[-1]
        assert provider_id == 1
        assert event.to_dict()["event_type"] == "ProviderRegistered"
