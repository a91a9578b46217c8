"""
Error code system.

TelebillError is the base exception for all structured ledger errors.
Raise it (or one of the subclasses below) with an error code from the
registry; hosts that register the FastAPI handler get a structured JSON
response, everyone else gets a typed exception carrying the code.

Usage:
    from telebill.core.errors import AccountNotFound
    raise AccountNotFound(detail="no account acct_42", context={"account_id": "acct_42"})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^TB-[A-Z]{2,6}-\d{3}$")


class TelebillError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "TB-ACC-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    default_code: str | None = None

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if code is None or not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InsufficientBalance(TelebillError):
    """Balance is below the minimum required for a spend-gated action."""

    default_code = "TB-BAL-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class AccountNotFound(TelebillError):
    default_code = "TB-ACC-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class RecordNotFound(TelebillError):
    """No call billing record for the given call reference."""

    default_code = "TB-REC-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class SubscriptionNotFound(TelebillError):
    default_code = "TB-SUB-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class LedgerStoreError(TelebillError):
    """The underlying store failed; the unit of work was rolled back."""

    default_code = "TB-DB-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class IdempotencyConflict(TelebillError):
    """An idempotency key was reused for a different account, subscription or amount."""

    default_code = "TB-IDEM-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)
