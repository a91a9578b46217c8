"""
Pytest configuration for telebill tests.
Points the ledger at a throwaway SQLite file before any telebill import.
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="telebill_test_")
os.environ.setdefault("TELEBILL_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import delete
from sqlmodel import SQLModel

from telebill.config import BillingRates
from telebill.core.database import get_engine, get_session_context

# Import all models so their tables are registered on SQLModel.metadata
from telebill.models.billing import Account, CallBillingRecord, LedgerEntry, NumberSubscription

SQLModel.metadata.create_all(get_engine())

# Load error registry so handlers resolve the right HTTP status codes
from telebill.core.errors.registry import error_registry
error_registry.load()

from telebill.services.allowance_clock import AllowanceClock
from telebill.services.billing_ledger import BillingLedger
from telebill.services.ledger_repository import LedgerRepository
from telebill.services.purchase_settlement import PurchaseSettlement
from telebill.services.settlement_processor import SettlementProcessor

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Mutable 'now' shared by the fixtures of one test."""

    def __init__(self, now: datetime) -> None:
        self.value = now

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture(autouse=True)
def clean_tables():
    """Every test starts from an empty ledger."""
    yield
    with get_session_context() as session:
        for model in (LedgerEntry, CallBillingRecord, NumberSubscription, Account):
            session.exec(delete(model))
        session.commit()


@pytest.fixture
def frozen_now():
    return FrozenClock(NOW)


@pytest.fixture
def rates():
    return BillingRates(
        min_required_balance=Decimal("5.00"),
        call_rate_per_minute=Decimal("0.02"),
        monthly_free_minutes=200,
        phone_number_monthly_price=Decimal("2.00"),
        number_renewal_days=30,
    )


@pytest.fixture
def repository():
    return LedgerRepository()


@pytest.fixture
def ledger(rates, repository, frozen_now):
    clock = AllowanceClock(rates.monthly_free_minutes, now=frozen_now)
    return BillingLedger(rates, repository=repository, clock=clock)


@pytest.fixture
def processor(ledger):
    return SettlementProcessor(ledger)


@pytest.fixture
def purchases(ledger):
    return PurchaseSettlement(ledger)


@pytest.fixture
def make_account(repository):
    """Create an account whose allowance was already reset this month by default."""

    def _make(
        account_id: str = "acct_1",
        balance: str = "10.00",
        free_minutes: int = 0,
        last_reset=NOW,
        claimed_free_number: bool = False,
    ) -> Account:
        return repository.create_account(
            account_id,
            balance=Decimal(balance),
            free_minutes_remaining=free_minutes,
            free_minutes_last_reset=last_reset,
            has_claimed_free_number=claimed_free_number,
        )

    return _make
