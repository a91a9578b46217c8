"""
Billing Ledger: Balance Gate, Call Settlement & Number Charges
===============================================================

PURPOSE:
    The transactional core of per-minute telephony billing:
    1. **check_minimum_balance()** / **assert_minimum_balance()**: preventive
       gate applied before new spend (new calls, paid numbers).
    2. **charge_for_completed_call()**: one-time settlement of a finished
       call, consuming free minutes first and cash second.
    3. **charge_for_number_purchase()**: free-number entitlement or the first
       month of a paid number.
    4. **credit_funds()**: the "funds added" payment event.

    Every entry point takes the account lock and runs the monthly allowance
    reset as its first step, inside the same transaction.

SETTLEMENT:
    minutes          = ceil(duration_seconds / 60)   (unset or <= 0 -> 0)
    free_consumed    = min(free_minutes_remaining, minutes)
    billable_minutes = minutes - free_consumed
    amount           = billable_minutes * call_rate_per_minute, rounded to cents

    Settlement never fails for lack of funds: the call already happened.
    The balance may go negative, which then blocks new spend at the gate.

IDEMPOTENCY:
    CallBillingRecord.is_billed is the settlement guard, re-read under the
    record lock. Ledger entries carry unique idempotency keys:
        call:{call_reference}
        purchase:{settlement_token}    (only when the caller supplies one)
        funds:{payment_reference}

    A replayed key must describe the mutation it first recorded: the same
    account and reference, the same entry kind (free or paid number) and,
    for funds, the same amount. Anything else raises IdempotencyConflict
    instead of being reported as a duplicate.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from telebill.config import BillingRates
from telebill.core.errors import IdempotencyConflict, InsufficientBalance, RecordNotFound
from telebill.core.structured_logging import ledger_context
from telebill.models.billing import Account, CallBillingRecord, LedgerEntry
from telebill.services.allowance_clock import AllowanceClock
from telebill.services.ledger_repository import LedgerRepository, LockedAccount

logger = logging.getLogger(__name__)

__all__ = [
    "BillingLedger",
    "BalanceCheck",
    "CallCharge",
    "NumberCharge",
    "FundsCredit",
    "AccountState",
    "TimeRemaining",
    "minutes_from_seconds",
    "to_money",
    "billing_ledger",
]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Round to the currency's minor unit (half up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def minutes_from_seconds(seconds: Optional[int]) -> int:
    """Billable minutes for a duration: every started minute counts."""
    secs = int(seconds or 0)
    if secs <= 0:
        return 0
    return math.ceil(secs / 60)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BalanceCheck:
    """Outcome of a spend gate."""

    allowed: bool
    balance: Decimal
    minimum: Decimal
    free_minutes_remaining: int
    reason: Optional[str] = None  # None | "free_minutes" | "insufficient_balance"


@dataclass(frozen=True)
class CallCharge:
    """Outcome of a call settlement."""

    call_reference: str
    account_id: str
    already_billed: bool
    minutes: int = 0
    free_minutes_consumed: int = 0
    billed_minutes: int = 0
    amount: Decimal = ZERO
    balance: Decimal = ZERO
    free_minutes_remaining: int = 0


@dataclass(frozen=True)
class NumberCharge:
    """Outcome of a number purchase settlement."""

    account_id: str
    subscription_id: int
    is_free: bool
    charged: Decimal
    next_renewal_at: Optional[datetime]
    balance: Decimal
    duplicate: bool = False


@dataclass(frozen=True)
class FundsCredit:
    account_id: str
    payment_reference: str
    amount: Decimal
    balance: Decimal
    duplicate: bool = False


@dataclass(frozen=True)
class AccountState:
    account_id: str
    balance: Decimal
    free_minutes_remaining: int
    has_claimed_free_number: bool
    free_minutes_last_reset: Optional[datetime] = None


@dataclass(frozen=True)
class TimeRemaining:
    """Talk time an account can still afford right now."""

    account_id: str
    free_minutes_remaining: int
    free_seconds_remaining: int
    balance: Decimal
    call_rate_per_minute: Decimal
    paid_seconds_available: int
    total_seconds_available: int

    @property
    def total_minutes_available(self) -> int:
        return self.total_seconds_available // 60


class BillingLedger:
    """
    Reads and mutates account balances and free-minute allowances.

    Pricing is injected as a BillingRates value; the ledger never reads
    process-wide settings.
    """

    def __init__(
        self,
        rates: BillingRates,
        repository: Optional[LedgerRepository] = None,
        clock: Optional[AllowanceClock] = None,
    ) -> None:
        self.rates = rates
        self.repository = repository or LedgerRepository()
        self.clock = clock or AllowanceClock(rates.monthly_free_minutes)

    # ------------------------------------------------------------------
    # Allowance
    # ------------------------------------------------------------------

    def _apply_reset(self, locked: LockedAccount) -> bool:
        account = locked.account
        previous = account.free_minutes_remaining
        if not self.clock.ensure_monthly_reset(account):
            return False
        locked.session.add(account)
        self.repository.add_entry(
            locked.session,
            account,
            kind="allowance_reset",
            free_minutes_delta=account.free_minutes_remaining - previous,
        )
        return True

    def ensure_monthly_reset(self, account_id: str) -> bool:
        """Apply the monthly allowance reset to an account if it is due."""
        with ledger_context(account_id=account_id):
            return self.repository.with_account_lock(account_id, self._apply_reset)

    # ------------------------------------------------------------------
    # Pre-flight gates
    # ------------------------------------------------------------------

    def _balance_check(self, account: Account) -> BalanceCheck:
        balance = to_money(account.balance)
        allowed = balance >= self.rates.min_required_balance
        return BalanceCheck(
            allowed=allowed,
            balance=balance,
            minimum=self.rates.min_required_balance,
            free_minutes_remaining=account.free_minutes_remaining,
            reason=None if allowed else "insufficient_balance",
        )

    def check_minimum_balance(self, account_id: str) -> BalanceCheck:
        """Balance-floor gate only. Callers combine it with the free-minute check."""

        def _check(locked: LockedAccount) -> BalanceCheck:
            self._apply_reset(locked)
            return self._balance_check(locked.account)

        with ledger_context(account_id=account_id):
            return self.repository.with_account_lock(account_id, _check)

    def assert_minimum_balance(self, account_id: str) -> None:
        """Raise InsufficientBalance when the balance floor is not met."""
        result = self.check_minimum_balance(account_id)
        if not result.allowed:
            logger.info(
                "Minimum balance gate refused: account=%s balance=%s minimum=%s",
                account_id,
                result.balance,
                result.minimum,
            )
            raise InsufficientBalance(
                detail=f"balance {result.balance} below minimum {result.minimum}",
                context={
                    "account_id": account_id,
                    "balance": str(result.balance),
                    "minimum": str(result.minimum),
                },
            )

    def check_call_allowed(self, account_id: str) -> BalanceCheck:
        """Gate for starting a call: free minutes first, else the balance floor."""

        def _check(locked: LockedAccount) -> BalanceCheck:
            self._apply_reset(locked)
            account = locked.account
            if account.free_minutes_remaining > 0:
                return BalanceCheck(
                    allowed=True,
                    balance=to_money(account.balance),
                    minimum=self.rates.min_required_balance,
                    free_minutes_remaining=account.free_minutes_remaining,
                    reason="free_minutes",
                )
            return self._balance_check(account)

        with ledger_context(account_id=account_id):
            return self.repository.with_account_lock(account_id, _check)

    # ------------------------------------------------------------------
    # Call settlement
    # ------------------------------------------------------------------

    def price_minutes(self, minutes: int) -> Decimal:
        return to_money(Decimal(minutes) * self.rates.call_rate_per_minute)

    def charge_for_completed_call(
        self,
        call_reference: str,
        reported_duration: Optional[int] = None,
    ) -> CallCharge:
        """
        Settle a completed call exactly once.

        A record that is already billed is returned untouched
        (already_billed=True). Raises RecordNotFound for an unknown reference.
        """
        record = self.repository.read(lambda s: self.repository.find_call_record(s, call_reference))
        if record is None:
            raise RecordNotFound(
                detail=f"no call record {call_reference!r}",
                context={"call_reference": call_reference},
            )

        def _settle(locked: LockedAccount) -> CallCharge:
            session, account = locked.session, locked.account
            row = self.repository.lock_call_record(session, call_reference)

            if row.is_billed:
                return self._settled_result(session, row, account)

            if reported_duration is not None:
                row.duration_seconds = int(reported_duration)

            self._apply_reset(locked)

            minutes = minutes_from_seconds(row.duration_seconds)
            free_consumed = min(account.free_minutes_remaining, minutes)
            billable = minutes - free_consumed
            amount = self.price_minutes(billable)

            now = self.clock.now()
            account.free_minutes_remaining -= free_consumed
            account.balance = to_money(Decimal(account.balance) - amount)
            account.updated_at = now

            row.is_billed = True
            row.billed_minutes = billable
            row.billed_amount = amount
            row.billed_at = now
            row.updated_at = now

            session.add(account)
            session.add(row)
            self.repository.add_entry(
                session,
                account,
                kind="call_charge",
                amount=-amount,
                free_minutes_delta=-free_consumed,
                billed_minutes=billable,
                reference=call_reference,
                idempotency_key=f"call:{call_reference}",
            )

            return CallCharge(
                call_reference=call_reference,
                account_id=account.id,
                already_billed=False,
                minutes=minutes,
                free_minutes_consumed=free_consumed,
                billed_minutes=billable,
                amount=amount,
                balance=account.balance,
                free_minutes_remaining=account.free_minutes_remaining,
            )

        with ledger_context(account_id=record.account_id, call_reference=call_reference):
            charge = self.repository.with_account_lock(record.account_id, _settle)
            if charge.already_billed:
                logger.info("Call already settled, skipping: %s", call_reference)
            else:
                logger.info(
                    "Call settled: ref=%s minutes=%d free=%d billed=%d amount=%s balance=%s",
                    call_reference,
                    charge.minutes,
                    charge.free_minutes_consumed,
                    charge.billed_minutes,
                    charge.amount,
                    charge.balance,
                )
                if charge.balance < ZERO:
                    logger.warning(
                        "Account balance negative after settlement: account=%s balance=%s",
                        charge.account_id,
                        charge.balance,
                    )
        return charge

    def _settled_result(self, session, row: CallBillingRecord, account: Account) -> CallCharge:
        """Replay of the first settlement, read back from its call entry."""
        entry = self.repository.find_entry_by_key(session, f"call:{row.call_reference}")
        free_consumed = -entry.free_minutes_delta if entry is not None else 0
        billed = row.billed_minutes or 0
        return CallCharge(
            call_reference=row.call_reference,
            account_id=account.id,
            already_billed=True,
            minutes=billed + free_consumed,
            free_minutes_consumed=free_consumed,
            billed_minutes=billed,
            amount=to_money(row.billed_amount or ZERO),
            balance=to_money(account.balance),
            free_minutes_remaining=account.free_minutes_remaining,
        )

    @staticmethod
    def _check_replay(
        previous: LedgerEntry,
        account_id: str,
        reference: str,
        kind: str,
        amount: Optional[Decimal] = None,
    ) -> None:
        if (
            previous.account_id == account_id
            and previous.reference == reference
            and previous.kind == kind
            and (amount is None or to_money(previous.amount) == to_money(amount))
        ):
            return
        logger.warning(
            "Idempotency key reused for a different mutation: key=%s account=%s reference=%s",
            previous.idempotency_key,
            account_id,
            reference,
        )
        raise IdempotencyConflict(
            detail=f"key {previous.idempotency_key!r} already recorded for account {previous.account_id!r}",
            context={
                "idempotency_key": previous.idempotency_key,
                "recorded_account_id": previous.account_id,
                "recorded_reference": previous.reference,
                "account_id": account_id,
                "reference": reference,
                "kind": kind,
            },
        )

    # ------------------------------------------------------------------
    # Number purchase
    # ------------------------------------------------------------------

    def charge_for_number_purchase(
        self,
        account_id: str,
        subscription_id: int,
        is_free: bool,
        settlement_token: Optional[str] = None,
    ) -> NumberCharge:
        """
        Price a newly acquired number.

        Eligibility for the free path and the minimum-balance gate are the
        caller's responsibility. With a settlement_token, a repeated request
        returns the first result (duplicate=True) without charging again.
        """
        idempotency_key = f"purchase:{settlement_token}" if settlement_token else None

        def _charge(locked: LockedAccount) -> NumberCharge:
            session, account = locked.session, locked.account
            subscription = self.repository.lock_subscription(session, subscription_id, account_id)

            if idempotency_key:
                previous = self.repository.find_entry_by_key(session, idempotency_key)
                if previous is not None:
                    self._check_replay(
                        previous,
                        account_id,
                        str(subscription.id),
                        "free_number" if is_free else "number_charge",
                    )
                    return NumberCharge(
                        account_id=account_id,
                        subscription_id=subscription.id,
                        is_free=subscription.is_free,
                        charged=to_money(-previous.amount),
                        next_renewal_at=subscription.next_renewal_at,
                        balance=to_money(account.balance),
                        duplicate=True,
                    )

            self._apply_reset(locked)
            now = self.clock.now()

            if is_free:
                subscription.is_free = True
                subscription.next_renewal_at = None
                account.has_claimed_free_number = True
                charged = ZERO
                kind = "free_number"
            else:
                charged = to_money(self.rates.phone_number_monthly_price)
                account.balance = to_money(Decimal(account.balance) - charged)
                subscription.is_free = False
                subscription.next_renewal_at = now + timedelta(days=self.rates.number_renewal_days)
                kind = "number_charge"

            account.updated_at = now
            subscription.updated_at = now
            session.add(account)
            session.add(subscription)
            self.repository.add_entry(
                session,
                account,
                kind=kind,
                amount=-charged,
                reference=str(subscription.id),
                idempotency_key=idempotency_key,
            )
            return NumberCharge(
                account_id=account_id,
                subscription_id=subscription.id,
                is_free=subscription.is_free,
                charged=charged,
                next_renewal_at=subscription.next_renewal_at,
                balance=account.balance,
            )

        with ledger_context(account_id=account_id, subscription_id=subscription_id):
            result = self.repository.with_account_lock(account_id, _charge)
            if result.duplicate:
                logger.info("Duplicate purchase settlement ignored: token=%s", settlement_token)
            else:
                logger.info(
                    "Number purchase settled: account=%s subscription=%s free=%s charged=%s",
                    account_id,
                    subscription_id,
                    result.is_free,
                    result.charged,
                )
        return result

    # ------------------------------------------------------------------
    # Funds added
    # ------------------------------------------------------------------

    def credit_funds(self, account_id: str, amount, payment_reference: str) -> FundsCredit:
        """Apply a confirmed payment to the balance, once per payment reference."""
        credit = to_money(amount)
        if credit <= ZERO:
            raise ValueError("amount must be positive")
        if not payment_reference:
            raise ValueError("payment_reference is required")
        idempotency_key = f"funds:{payment_reference}"

        def _credit(locked: LockedAccount) -> FundsCredit:
            session, account = locked.session, locked.account
            previous = self.repository.find_entry_by_key(session, idempotency_key)
            if previous is not None:
                self._check_replay(previous, account_id, payment_reference, "funds_added", credit)
                return FundsCredit(
                    account_id=account_id,
                    payment_reference=payment_reference,
                    amount=to_money(previous.amount),
                    balance=to_money(account.balance),
                    duplicate=True,
                )

            self._apply_reset(locked)
            account.balance = to_money(Decimal(account.balance) + credit)
            account.updated_at = self.clock.now()
            session.add(account)
            self.repository.add_entry(
                session,
                account,
                kind="funds_added",
                amount=credit,
                reference=payment_reference,
                idempotency_key=idempotency_key,
            )
            return FundsCredit(
                account_id=account_id,
                payment_reference=payment_reference,
                amount=credit,
                balance=account.balance,
            )

        with ledger_context(account_id=account_id):
            result = self.repository.with_account_lock(account_id, _credit)
            if not result.duplicate:
                logger.info("Funds added: account=%s amount=%s balance=%s", account_id, credit, result.balance)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_account_state(self, account_id: str) -> AccountState:
        """Read-only snapshot. Does not apply a pending allowance reset."""

        def _state(session) -> AccountState:
            account = self.repository.get_account(session, account_id)
            return AccountState(
                account_id=account.id,
                balance=to_money(account.balance),
                free_minutes_remaining=account.free_minutes_remaining,
                has_claimed_free_number=account.has_claimed_free_number,
                free_minutes_last_reset=account.free_minutes_last_reset,
            )

        return self.repository.read(_state)

    def get_time_remaining(self, account_id: str) -> TimeRemaining:
        """Free talk time if any is left, otherwise what the balance can buy."""

        def _remaining(locked: LockedAccount) -> TimeRemaining:
            self._apply_reset(locked)
            account = locked.account
            balance = to_money(account.balance)
            rate = self.rates.call_rate_per_minute
            free_seconds = max(0, account.free_minutes_remaining * 60)

            paid_seconds = 0
            if free_seconds <= 0 and balance > ZERO and rate > ZERO:
                paid_seconds = int(balance * 60 // rate)

            return TimeRemaining(
                account_id=account.id,
                free_minutes_remaining=account.free_minutes_remaining,
                free_seconds_remaining=free_seconds,
                balance=balance,
                call_rate_per_minute=rate,
                paid_seconds_available=paid_seconds,
                total_seconds_available=free_seconds if free_seconds > 0 else paid_seconds,
            )

        with ledger_context(account_id=account_id):
            return self.repository.with_account_lock(account_id, _remaining)

    def get_pricing(self) -> BillingRates:
        return self.rates

    def list_ledger_entries(self, account_id: str, limit: int = 100) -> List[LedgerEntry]:
        """Most recent ledger entries for an account, newest first."""
        return self.repository.list_entries(account_id, limit=limit)


# Module-level singleton priced from settings
billing_ledger = BillingLedger(BillingRates.from_settings())
