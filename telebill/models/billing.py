"""
Billing Models
==============

SQLModel tables for persistent ledger state:
- Account: cash balance and monthly free-minute allowance, one per user.
- CallBillingRecord: one per call; settled exactly once (is_billed).
- NumberSubscription: one per owned phone number; free or recurring paid.
- LedgerEntry: append-only audit row for every balance/allowance mutation.

Money is NUMERIC(12,2) mapped to Decimal. Timestamps are stored as
timezone-aware UTC where the backend supports it; SQLite hands them back
naive, and readers treat naive values as UTC.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, DateTime, Numeric
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money_column(nullable: bool = False, default: Optional[str] = "0.00") -> Column:
    return Column(
        Numeric(12, 2, asdecimal=True),
        nullable=nullable,
        server_default=default,
    )


def _ts_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class Account(SQLModel, table=True):
    """Per-user ledger: balance plus the monthly free-minute pool."""

    __tablename__ = "accounts"

    id: str = Field(primary_key=True, max_length=128)
    balance: Decimal = Field(default=Decimal("0.00"), sa_column=_money_column())
    free_minutes_remaining: int = Field(default=0, ge=0)
    # None = never reset; the next billing-relevant operation resets it
    free_minutes_last_reset: Optional[datetime] = Field(default=None, sa_column=_ts_column(nullable=True))
    has_claimed_free_number: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())


class CallBillingRecord(SQLModel, table=True):
    """Billing state of a single call, keyed by the provider's call reference."""

    __tablename__ = "call_billing_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    call_reference: str = Field(unique=True, index=True, max_length=128)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=128)
    duration_seconds: Optional[int] = Field(default=None, nullable=True)
    is_billed: bool = Field(default=False, index=True)
    billed_minutes: Optional[int] = Field(default=None, nullable=True)
    billed_amount: Optional[Decimal] = Field(default=None, sa_column=_money_column(nullable=True, default=None))
    billed_at: Optional[datetime] = Field(default=None, sa_column=_ts_column(nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())


class NumberSubscription(SQLModel, table=True):
    """Pricing state of an owned phone number."""

    __tablename__ = "number_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=128)
    phone_number: Optional[str] = Field(default=None, nullable=True, max_length=32)
    is_free: bool = Field(default=False)
    next_renewal_at: Optional[datetime] = Field(default=None, sa_column=_ts_column(nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())


class LedgerEntry(SQLModel, table=True):
    """Append-only audit record of one ledger mutation."""

    __tablename__ = "ledger_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=128)
    kind: str = Field(max_length=32, index=True)  # allowance_reset | call_charge | number_charge | free_number | funds_added
    amount: Decimal = Field(default=Decimal("0.00"), sa_column=_money_column())  # negative = debit
    free_minutes_delta: int = Field(default=0)
    billed_minutes: int = Field(default=0)
    reference: Optional[str] = Field(default=None, nullable=True, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=255)
    balance_after: Decimal = Field(default=Decimal("0.00"), sa_column=_money_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=_ts_column())
