"""
Purchase Settlement Tests
=========================

Coverage:
  - Free-number path (no charge, entitlement consumed, no renewal date)
  - Paid path (price debited, renewal date one cycle ahead)
  - Settlement token makes a repeated request a no-op
  - A token reused for another account, subscription or path is rejected
  - A failing paid purchase leaves balance and subscription untouched
  - Eligibility quote (free, paid and allowed, paid and refused)
  - Unknown or foreign subscriptions
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from telebill.core.errors import IdempotencyConflict, SubscriptionNotFound
from telebill.services.allowance_clock import as_utc


class TestSettleNumberPurchase:

    def test_free_number(self, purchases, ledger, repository, make_account):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1", "+15550100")

        charge = purchases.settle_number_purchase("acct_1", sub.id, requested_as_free=True)

        assert charge.is_free is True
        assert charge.charged == Decimal("0.00")
        assert charge.next_renewal_at is None
        state = ledger.get_account_state("acct_1")
        assert state.balance == Decimal("10.00")
        assert state.has_claimed_free_number is True
        assert repository.get_subscription(sub.id).is_free is True

    def test_paid_number(self, purchases, ledger, repository, make_account, frozen_now):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1", "+15550101")

        charge = purchases.settle_number_purchase("acct_1", sub.id, requested_as_free=False)

        assert charge.is_free is False
        assert charge.charged == Decimal("2.00")
        assert charge.balance == Decimal("8.00")
        assert ledger.get_account_state("acct_1").balance == Decimal("8.00")
        stored = repository.get_subscription(sub.id)
        assert as_utc(stored.next_renewal_at) == frozen_now.value + timedelta(days=30)

    def test_paid_number_can_drive_balance_negative(self, purchases, make_account):
        make_account(balance="1.00")
        sub = purchases.open_subscription("acct_1")

        charge = purchases.settle_number_purchase("acct_1", sub.id, requested_as_free=False)

        assert charge.balance == Decimal("-1.00")

    def test_repeated_token_charges_once(self, purchases, ledger, make_account):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1")

        first = purchases.settle_number_purchase("acct_1", sub.id, False, settlement_token="ord_1")
        second = purchases.settle_number_purchase("acct_1", sub.id, False, settlement_token="ord_1")

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.charged == Decimal("2.00")
        assert ledger.get_account_state("acct_1").balance == Decimal("8.00")

    def test_token_reused_by_another_account_conflicts(self, purchases, ledger, repository, make_account):
        make_account("acct_1", balance="10.00")
        make_account("acct_2", balance="10.00")
        mine = purchases.open_subscription("acct_1")
        theirs = purchases.open_subscription("acct_2")
        purchases.settle_number_purchase("acct_1", mine.id, False, settlement_token="ord_shared")

        with pytest.raises(IdempotencyConflict) as exc_info:
            purchases.settle_number_purchase("acct_2", theirs.id, False, settlement_token="ord_shared")

        assert exc_info.value.context["recorded_account_id"] == "acct_1"
        assert ledger.get_account_state("acct_2").balance == Decimal("10.00")
        assert repository.get_subscription(theirs.id).next_renewal_at is None

    def test_token_reused_for_another_subscription_conflicts(self, purchases, ledger, repository, make_account):
        make_account(balance="10.00")
        first = purchases.open_subscription("acct_1")
        second = purchases.open_subscription("acct_1")
        purchases.settle_number_purchase("acct_1", first.id, False, settlement_token="ord_2")

        with pytest.raises(IdempotencyConflict):
            purchases.settle_number_purchase("acct_1", second.id, False, settlement_token="ord_2")

        assert ledger.get_account_state("acct_1").balance == Decimal("8.00")
        assert repository.get_subscription(second.id).next_renewal_at is None

    def test_token_replayed_on_the_other_path_conflicts(self, purchases, ledger, make_account):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1")
        purchases.settle_number_purchase("acct_1", sub.id, True, settlement_token="ord_3")

        with pytest.raises(IdempotencyConflict):
            purchases.settle_number_purchase("acct_1", sub.id, False, settlement_token="ord_3")

        assert ledger.get_account_state("acct_1").balance == Decimal("10.00")

    def test_failed_paid_purchase_changes_nothing(self, purchases, ledger, repository, make_account, monkeypatch):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1")

        def boom(*args, **kwargs):
            raise RuntimeError("entry write failed")

        monkeypatch.setattr(repository, "add_entry", boom)
        with pytest.raises(RuntimeError, match="entry write failed"):
            purchases.settle_number_purchase("acct_1", sub.id, False, settlement_token="ord_4")

        assert ledger.get_account_state("acct_1").balance == Decimal("10.00")
        stored = repository.get_subscription(sub.id)
        assert stored.next_renewal_at is None
        assert stored.is_free is False
        assert ledger.list_ledger_entries("acct_1") == []

    def test_without_token_each_request_charges(self, purchases, ledger, make_account):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1")

        purchases.settle_number_purchase("acct_1", sub.id, False)
        purchases.settle_number_purchase("acct_1", sub.id, False)

        assert ledger.get_account_state("acct_1").balance == Decimal("6.00")

    def test_purchase_runs_monthly_reset(self, purchases, ledger, make_account):
        from datetime import datetime, timezone

        make_account(free_minutes=0, last_reset=datetime(2026, 9, 3, tzinfo=timezone.utc))
        sub = purchases.open_subscription("acct_1")

        purchases.settle_number_purchase("acct_1", sub.id, True)

        assert ledger.get_account_state("acct_1").free_minutes_remaining == 200

    def test_subscription_of_another_account(self, purchases, make_account):
        make_account("acct_1")
        make_account("acct_2")
        sub = purchases.open_subscription("acct_2")

        with pytest.raises(SubscriptionNotFound):
            purchases.settle_number_purchase("acct_1", sub.id, False)

    def test_unknown_subscription(self, purchases, make_account):
        make_account()
        with pytest.raises(SubscriptionNotFound):
            purchases.settle_number_purchase("acct_1", 99999, False)


class TestQuoteNumberPurchase:

    def test_first_number_is_free(self, purchases, make_account):
        make_account(balance="0.00")
        quote = purchases.quote_number_purchase("acct_1")
        assert quote.eligible_for_free is True
        assert quote.allowed is True
        assert quote.price == Decimal("0.00")
        assert quote.balance_check is None

    def test_second_number_needs_minimum_balance(self, purchases, make_account):
        make_account(balance="4.00", claimed_free_number=True)
        quote = purchases.quote_number_purchase("acct_1")
        assert quote.eligible_for_free is False
        assert quote.allowed is False
        assert quote.price == Decimal("2.00")
        assert quote.balance_check.reason == "insufficient_balance"

    def test_second_number_allowed_with_balance(self, purchases, make_account):
        make_account(balance="5.00", claimed_free_number=True)
        quote = purchases.quote_number_purchase("acct_1")
        assert quote.allowed is True

    def test_quote_follows_claim(self, purchases, make_account):
        make_account(balance="10.00")
        sub = purchases.open_subscription("acct_1")
        purchases.settle_number_purchase("acct_1", sub.id, True)

        assert purchases.quote_number_purchase("acct_1").eligible_for_free is False
