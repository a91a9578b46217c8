"""
Ledger Repository: unit of work and account locking.

Every balance or allowance mutation runs through with_account_lock(), which
opens one transaction, locks the account row before reading it, hands the
locked row to the caller, and commits. Any exception rolls the whole unit
back; store failures surface as LedgerStoreError. Lock order is always
account first, then the call record or subscription.

Locking per backend:
    PostgreSQL: SELECT ... FOR UPDATE on the account (and record) rows.
    SQLite:     FOR UPDATE is not emitted; every unit of work starts with
                BEGIN IMMEDIATE (see telebill.core.database), which
                serializes writers at the database level. read() sessions
                open with a deferred BEGIN and do not take the write lock.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterator, List, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from telebill.core.database import get_read_session_context, get_session_context, sqlite_retry
from telebill.core.errors import (
    AccountNotFound,
    LedgerStoreError,
    RecordNotFound,
    SubscriptionNotFound,
)
from telebill.models.billing import (
    Account,
    CallBillingRecord,
    LedgerEntry,
    NumberSubscription,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["LedgerRepository", "LockedAccount"]


@dataclass
class LockedAccount:
    """An account row locked for the duration of the current unit of work."""

    session: Session
    account: Account


class LedgerRepository:
    """Persistence seam for the ledger services."""

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        read_session_factory: Optional[Callable] = None,
    ) -> None:
        self._session_factory = session_factory or get_session_context
        self._read_session_factory = read_session_factory or get_read_session_context

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        with self._session_factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def run(self, fn: Callable[[Session], T]) -> T:
        """Run *fn* as one transaction. Retried as a whole on SQLite BUSY."""

        def attempt() -> T:
            with self._session_scope() as session:
                return fn(session)

        try:
            return sqlite_retry(attempt)
        except SQLAlchemyError as exc:
            logger.error("Ledger transaction rolled back: %s", exc)
            raise LedgerStoreError(detail=str(exc)) from exc

    def with_account_lock(self, account_id: str, fn: Callable[[LockedAccount], T]) -> T:
        """Run *fn* with the account row exclusively locked, then commit."""
        return self.run(lambda session: fn(LockedAccount(session, self._lock_account(session, account_id))))

    def read(self, fn: Callable[[Session], T]) -> T:
        """Read-only access; nothing is committed."""
        try:
            with self._read_session_factory() as session:
                return fn(session)
        except SQLAlchemyError as exc:
            raise LedgerStoreError(detail=str(exc)) from exc

    # ------------------------------------------------------------------
    # Row access (inside a unit of work)
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_account(session: Session, account_id: str) -> Account:
        stmt = select(Account).where(Account.id == account_id).with_for_update()
        account = session.exec(stmt).first()
        if account is None:
            raise AccountNotFound(
                detail=f"no account {account_id!r}",
                context={"account_id": account_id},
            )
        return account

    @staticmethod
    def get_account(session: Session, account_id: str) -> Account:
        account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(
                detail=f"no account {account_id!r}",
                context={"account_id": account_id},
            )
        return account

    @staticmethod
    def find_call_record(session: Session, call_reference: str) -> Optional[CallBillingRecord]:
        stmt = select(CallBillingRecord).where(CallBillingRecord.call_reference == call_reference)
        return session.exec(stmt).first()

    @staticmethod
    def lock_call_record(session: Session, call_reference: str) -> CallBillingRecord:
        stmt = (
            select(CallBillingRecord)
            .where(CallBillingRecord.call_reference == call_reference)
            .with_for_update()
        )
        record = session.exec(stmt).first()
        if record is None:
            raise RecordNotFound(
                detail=f"no call record {call_reference!r}",
                context={"call_reference": call_reference},
            )
        return record

    @staticmethod
    def lock_subscription(session: Session, subscription_id: int, account_id: str) -> NumberSubscription:
        stmt = (
            select(NumberSubscription)
            .where(NumberSubscription.id == subscription_id)
            .where(NumberSubscription.account_id == account_id)
            .with_for_update()
        )
        subscription = session.exec(stmt).first()
        if subscription is None:
            raise SubscriptionNotFound(
                detail=f"no subscription {subscription_id!r} for account {account_id!r}",
                context={"subscription_id": subscription_id, "account_id": account_id},
            )
        return subscription

    @staticmethod
    def find_entry_by_key(session: Session, idempotency_key: str) -> Optional[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        return session.exec(stmt).first()

    @staticmethod
    def add_entry(
        session: Session,
        account: Account,
        kind: str,
        amount: Decimal = Decimal("0.00"),
        free_minutes_delta: int = 0,
        billed_minutes: int = 0,
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            account_id=account.id,
            kind=kind,
            amount=amount,
            free_minutes_delta=free_minutes_delta,
            billed_minutes=billed_minutes,
            reference=reference,
            idempotency_key=idempotency_key,
            balance_after=account.balance,
        )
        session.add(entry)
        return entry

    # ------------------------------------------------------------------
    # Provisioning (used by the collaborators that own these rows)
    # ------------------------------------------------------------------

    def create_account(
        self,
        account_id: str,
        balance: Decimal = Decimal("0.00"),
        free_minutes_remaining: int = 0,
        free_minutes_last_reset=None,
        has_claimed_free_number: bool = False,
    ) -> Account:
        """Insert a new account. A never-reset allowance fills on first use."""

        def _create(session: Session) -> Account:
            account = Account(
                id=account_id,
                balance=Decimal(balance),
                free_minutes_remaining=free_minutes_remaining,
                free_minutes_last_reset=free_minutes_last_reset,
                has_claimed_free_number=has_claimed_free_number,
            )
            session.add(account)
            session.flush()
            return account

        account = self.run(_create)
        logger.info("Account created: %s", account_id)
        return account

    def create_call_record(self, call_reference: str, account_id: str) -> CallBillingRecord:
        """Insert an unsettled record. Re-recording the same reference returns the existing row."""

        def _create(session: Session) -> CallBillingRecord:
            existing = self.find_call_record(session, call_reference)
            if existing is not None:
                return existing
            self.get_account(session, account_id)
            record = CallBillingRecord(call_reference=call_reference, account_id=account_id)
            session.add(record)
            session.flush()
            return record

        try:
            return self.run(_create)
        except LedgerStoreError as exc:
            # Lost an insert race on the unique reference
            if isinstance(exc.__cause__, IntegrityError):
                return self.read(lambda s: self.find_call_record(s, call_reference))
            raise

    def update_call_duration(self, call_reference: str, duration_seconds: int) -> bool:
        """Store the latest reported duration. Returns False once the call is settled."""

        def _update(session: Session) -> bool:
            record = self.lock_call_record(session, call_reference)
            if record.is_billed:
                return False
            record.duration_seconds = duration_seconds
            record.updated_at = utcnow()
            session.add(record)
            return True

        return self.run(_update)

    def create_subscription(self, account_id: str, phone_number: Optional[str] = None) -> NumberSubscription:
        def _create(session: Session) -> NumberSubscription:
            self.get_account(session, account_id)
            subscription = NumberSubscription(account_id=account_id, phone_number=phone_number)
            session.add(subscription)
            session.flush()
            return subscription

        return self.run(_create)

    def get_call_record(self, call_reference: str) -> CallBillingRecord:
        def _get(session: Session) -> CallBillingRecord:
            record = self.find_call_record(session, call_reference)
            if record is None:
                raise RecordNotFound(
                    detail=f"no call record {call_reference!r}",
                    context={"call_reference": call_reference},
                )
            return record

        return self.read(_get)

    def get_subscription(self, subscription_id: int) -> NumberSubscription:
        def _get(session: Session) -> NumberSubscription:
            subscription = session.get(NumberSubscription, subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(
                    detail=f"no subscription {subscription_id!r}",
                    context={"subscription_id": subscription_id},
                )
            return subscription

        return self.read(_get)

    def list_entries(self, account_id: str, limit: int = 100) -> List[LedgerEntry]:
        def _list(session: Session) -> List[LedgerEntry]:
            self.get_account(session, account_id)
            stmt = (
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.id.desc())
                .limit(limit)
            )
            return list(session.exec(stmt).all())

        return self.read(_list)
