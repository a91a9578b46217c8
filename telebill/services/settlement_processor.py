"""
Settlement Processor: call-lifecycle signals into ledger settlements.

The call-handling collaborator reports status changes at least once, possibly
duplicated and out of order. Only "completed" settles. Per call the state is

    Unsettled (is_billed = false) -> Settled (is_billed = true)

and Settled is terminal. Repeated or concurrent completions for the same call
are absorbed by the ledger's is_billed guard under the account lock.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from telebill.core.structured_logging import ledger_context
from telebill.models.billing import CallBillingRecord
from telebill.services.billing_ledger import BillingLedger, CallCharge

logger = logging.getLogger(__name__)

__all__ = ["CallStatusSignal", "SettlementProcessor", "COMPLETED"]

COMPLETED = "completed"


class CallStatusSignal(BaseModel):
    """Status notification from the call-lifecycle collaborator."""

    call_reference: str = Field(..., min_length=1, max_length=128)
    status: str = Field(..., min_length=1, description="initiated | ringing | answered | completed | ...")
    duration_seconds: Optional[int] = Field(default=None, ge=0)


class SettlementProcessor:
    """Idempotent entry point for call-completed notifications."""

    def __init__(self, ledger: BillingLedger) -> None:
        self.ledger = ledger
        self.repository = ledger.repository

    # ------------------------------------------------------------------
    # Hooks for the call-handling collaborator
    # ------------------------------------------------------------------

    def record_call_started(self, call_reference: str, account_id: str) -> CallBillingRecord:
        """Create the unsettled billing record a later completion will settle."""
        with ledger_context(account_id=account_id, call_reference=call_reference):
            record = self.repository.create_call_record(call_reference, account_id)
            logger.debug("Call record opened: %s", call_reference)
        return record

    def record_call_progress(self, call_reference: str, duration_seconds: int) -> bool:
        """Update the running duration. Ignored once the call is settled."""
        if duration_seconds < 0:
            raise ValueError("duration_seconds must be non-negative")
        updated = self.repository.update_call_duration(call_reference, duration_seconds)
        if not updated:
            logger.debug("Progress for settled call ignored: %s", call_reference)
        return updated

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def handle_call_completed(
        self,
        call_reference: str,
        status: str,
        reported_duration: Optional[int] = None,
    ) -> Optional[CallCharge]:
        """
        Settle a call on its "completed" signal.

        Returns None for non-completed statuses and for calls that were never
        recorded; otherwise the ledger's CallCharge (already_billed=True on
        a repeated delivery).
        """
        if (status or "").strip().lower() != COMPLETED:
            return None

        record = self.repository.read(lambda s: self.repository.find_call_record(s, call_reference))
        if record is None:
            logger.info("Completion for unknown call ignored: %s", call_reference)
            return None

        return self.ledger.charge_for_completed_call(call_reference, reported_duration)

    def handle_status_signal(self, signal: CallStatusSignal) -> Optional[CallCharge]:
        return self.handle_call_completed(
            signal.call_reference,
            signal.status,
            signal.duration_seconds,
        )


def get_settlement_processor() -> SettlementProcessor:
    """Processor bound to the module-level ledger."""
    from telebill.services.billing_ledger import billing_ledger

    return SettlementProcessor(billing_ledger)
