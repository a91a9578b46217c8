"""
Allowance Clock: lazy monthly reset of the free-minute pool.

An account's free minutes are refilled to the configured monthly allowance
the first time a billing-relevant operation touches the account in a new
UTC calendar month. There is no scheduler; the check runs inline, inside
the caller's account lock, so a reset and the mutation that follows it are
committed together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from telebill.models.billing import Account

logger = logging.getLogger(__name__)

__all__ = ["AllowanceClock", "as_utc", "needs_reset"]


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp to aware UTC (SQLite returns naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def needs_reset(last_reset: Optional[datetime], now: datetime) -> bool:
    """True when the allowance was never reset or was last reset in another UTC month."""
    if last_reset is None:
        return True
    last = as_utc(last_reset)
    current = as_utc(now)
    return last.year != current.year or last.month != current.month


class AllowanceClock:
    """Applies the monthly reset rule to a locked Account."""

    def __init__(
        self,
        monthly_free_minutes: int,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.monthly_free_minutes = monthly_free_minutes
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return as_utc(self._now())

    def ensure_monthly_reset(self, account: Account) -> bool:
        """Reset the allowance in place if due. Returns True when a reset happened.

        The account must be locked by the caller; the change is persisted by
        the caller's commit.
        """
        now = self.now()
        if not needs_reset(account.free_minutes_last_reset, now):
            return False

        previous = account.free_minutes_remaining
        account.free_minutes_remaining = self.monthly_free_minutes
        account.free_minutes_last_reset = now
        account.updated_at = now
        logger.info(
            "Free minutes reset: account=%s %d -> %d",
            account.id,
            previous,
            self.monthly_free_minutes,
        )
        return True
