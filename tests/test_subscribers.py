"""
Tests for the Subscriber Ledger

The live balance is an estimate built from the current fees of providers
that are still active; these tests pin that arithmetic down.
"""

import pytest

from accrual.errors import (
    AlreadyPaused,
    DuplicateProvider,
    InvalidAmount,
    InvalidProviderCount,
    NotOwner,
    SubscriberNotFound,
)
from accrual.subscribers import SubscriptionPlan

from conftest import PERIOD, START, register_providers


class TestSubscriptionPlan:

    def test_parse_is_case_insensitive(self):
        assert SubscriptionPlan.parse("premium") is SubscriptionPlan.PREMIUM
        assert SubscriptionPlan.parse(SubscriptionPlan.VIP) is SubscriptionPlan.VIP

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            SubscriptionPlan.parse("GOLD")


class TestProviderListValidation:
    """List shape is checked before anything else."""

    def test_too_few_providers(self, subscriber_ledger):
        with pytest.raises(InvalidProviderCount):
            subscriber_ledger.validate_provider_ids([1, 2])

    def test_too_many_providers(self, subscriber_ledger):
        with pytest.raises(InvalidProviderCount):
            subscriber_ledger.validate_provider_ids(list(range(1, 16)))

    def test_bounds_inclusive(self, subscriber_ledger):
        assert subscriber_ledger.validate_provider_ids([1, 2, 3]) == (1, 2, 3)
        assert len(subscriber_ledger.validate_provider_ids(list(range(1, 15)))) == 14

    def test_duplicates_rejected(self, subscriber_ledger):
        with pytest.raises(DuplicateProvider):
            subscriber_ledger.validate_provider_ids([1, 2, 2])


class TestLiveBalance:
    """deposit 600, three providers at fee 100 each."""

    @pytest.fixture
    def subscribed(self, ledger):
        provider_ids = register_providers(ledger, 3, fee=100)
        subscriber_id = ledger.register_subscriber("bob", 600, SubscriptionPlan.BASIC, provider_ids)
        return subscriber_id, provider_ids

    def test_full_deposit_at_registration(self, ledger, subscribed):
        subscriber_id, _ = subscribed
        assert ledger.get_subscriber_live_balance(subscriber_id) == 600

    def test_half_period_consumes_half_of_fees(self, ledger, clock, subscribed):
        subscriber_id, _ = subscribed
        clock.advance(PERIOD // 2)
        assert ledger.get_subscriber_live_balance(subscriber_id) == 450

    def test_pause_freezes_consumption(self, ledger, clock, subscribed):
        subscriber_id, _ = subscribed
        clock.advance(PERIOD // 2)
        ledger.pause_subscription(subscriber_id, "bob")

        clock.advance(PERIOD * 5)
        assert ledger.get_subscriber_live_balance(subscriber_id) == 450

    def test_deactivated_provider_drops_out_of_estimate(self, ledger, clock, subscribed):
        subscriber_id, provider_ids = subscribed
        clock.advance(PERIOD // 2)
        ledger.pause_subscription(subscriber_id, "bob")

        ledger.set_providers_active([provider_ids[0]], False)
        assert ledger.get_subscriber_live_balance(subscriber_id) == 500

    def test_floors_at_zero(self, ledger, clock, subscribed):
        subscriber_id, _ = subscribed
        clock.advance(PERIOD * 10)
        assert ledger.get_subscriber_live_balance(subscriber_id) == 0

    def test_current_fee_applies_retroactively(self, ledger, clock, subscribed):
        subscriber_id, provider_ids = subscribed
        clock.advance(PERIOD // 2)
        ledger.update_provider_fee(provider_ids[0], "provider-1", 300)

        # (100 + 100 + 300) over half a period
        assert ledger.get_subscriber_live_balance(subscriber_id) == 600 - 250


class TestPauseAndDeposit:

    @pytest.fixture
    def subscriber_id(self, ledger):
        provider_ids = register_providers(ledger, 3, fee=100)
        return ledger.register_subscriber("bob", 600, "VIP", provider_ids)

    def test_pause_stamps_date(self, ledger, clock, subscriber_id):
        clock.advance(42)
        ledger.pause_subscription(subscriber_id, "bob")

        state = ledger.get_subscriber_state(subscriber_id)
        assert state.is_paused is True
        assert state.paused_date == START + 42
        assert state.plan is SubscriptionPlan.VIP

    def test_pause_twice_rejected(self, ledger, subscriber_id):
        ledger.pause_subscription(subscriber_id, "bob")
        with pytest.raises(AlreadyPaused):
            ledger.pause_subscription(subscriber_id, "bob")

    def test_pause_requires_owner(self, ledger, subscriber_id):
        with pytest.raises(NotOwner):
            ledger.pause_subscription(subscriber_id, "mallory")
        assert ledger.get_subscriber_state(subscriber_id).is_paused is False

    def test_deposit_tops_up_balance(self, ledger, subscriber_id):
        ledger.deposit_to_subscription(subscriber_id, "bob", 250)
        assert ledger.get_subscriber_state(subscriber_id).balance == 850

    def test_deposit_allowed_after_pause(self, ledger, subscriber_id):
        ledger.pause_subscription(subscriber_id, "bob")
        ledger.deposit_to_subscription(subscriber_id, "bob", 10)
        assert ledger.get_subscriber_state(subscriber_id).balance == 610

    def test_deposit_requires_owner(self, ledger, subscriber_id):
        with pytest.raises(NotOwner):
            ledger.deposit_to_subscription(subscriber_id, "mallory", 100)
        assert ledger.get_subscriber_state(subscriber_id).balance == 600

    def test_negative_deposit_rejected(self, ledger, subscriber_id):
        with pytest.raises(InvalidAmount):
            ledger.deposit_to_subscription(subscriber_id, "bob", -1)

    def test_unknown_subscriber(self, ledger):
        with pytest.raises(SubscriberNotFound):
            ledger.get_subscriber_state(99)
        with pytest.raises(SubscriberNotFound):
            ledger.deposit_to_subscription(99, "bob", 1)

    def test_state_is_a_snapshot(self, ledger, subscriber_id):
        state = ledger.get_subscriber_state(subscriber_id)
        state.balance = 0
        assert ledger.get_subscriber_state(subscriber_id).balance == 600
