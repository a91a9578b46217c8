"""
Purchase Settlement: prices phone numbers as they are acquired.

Policy (is this the account's free number?) and mechanism (ledger mutation)
are kept apart: settle_number_purchase() trusts the caller's
requested_as_free flag, and quote_number_purchase() is the policy helper
callers may use to derive it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from telebill.models.billing import NumberSubscription
from telebill.services.billing_ledger import BalanceCheck, BillingLedger, NumberCharge

logger = logging.getLogger(__name__)

__all__ = ["PurchaseQuote", "PurchaseSettlement"]


@dataclass(frozen=True)
class PurchaseQuote:
    """What acquiring one more number would cost this account."""

    account_id: str
    eligible_for_free: bool
    allowed: bool
    price: Decimal
    balance_check: Optional[BalanceCheck] = None


class PurchaseSettlement:
    def __init__(self, ledger: BillingLedger) -> None:
        self.ledger = ledger

    def quote_number_purchase(self, account_id: str) -> PurchaseQuote:
        """First number is free; any further number needs the minimum balance."""
        state = self.ledger.get_account_state(account_id)
        if not state.has_claimed_free_number:
            return PurchaseQuote(
                account_id=account_id,
                eligible_for_free=True,
                allowed=True,
                price=Decimal("0.00"),
            )

        check = self.ledger.check_minimum_balance(account_id)
        return PurchaseQuote(
            account_id=account_id,
            eligible_for_free=False,
            allowed=check.allowed,
            price=self.ledger.rates.phone_number_monthly_price,
            balance_check=check,
        )

    def open_subscription(self, account_id: str, phone_number: Optional[str] = None) -> NumberSubscription:
        """Register an acquired number so its purchase can be settled."""
        return self.ledger.repository.create_subscription(account_id, phone_number)

    def settle_number_purchase(
        self,
        account_id: str,
        subscription_id: int,
        requested_as_free: bool,
        settlement_token: Optional[str] = None,
    ) -> NumberCharge:
        """Apply the purchase to the ledger as free or paid, as requested."""
        logger.debug(
            "Settling number purchase: account=%s subscription=%s free=%s",
            account_id,
            subscription_id,
            requested_as_free,
        )
        return self.ledger.charge_for_number_purchase(
            account_id,
            subscription_id,
            bool(requested_as_free),
            settlement_token=settlement_token,
        )


def get_purchase_settlement() -> PurchaseSettlement:
    """Purchase settlement bound to the module-level ledger."""
    from telebill.services.billing_ledger import billing_ledger

    return PurchaseSettlement(billing_ledger)
