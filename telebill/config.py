"""
telebill Application Configuration
===================================

PURPOSE:
    Pydantic-Settings based configuration for the billing ledger.
    All settings can be overridden via environment variables (TELEBILL_ prefix).

    The pricing constants are not read by the ledger directly. They are
    frozen into a BillingRates value at construction time, so a ledger built
    in a test can run with its own rates without touching process state.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the ledger service."""

    app_name: str = "telebill"
    debug: bool = False

    # Storage
    data_directory: str = "/data"

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    # Pricing (single currency, flat rates)
    # Spend-gated actions require at least this much cash once free minutes run out.
    min_required_balance: Decimal = Decimal("5.00")
    call_rate_per_minute: Decimal = Decimal("0.02")
    monthly_free_minutes: int = 200
    phone_number_monthly_price: Decimal = Decimal("2.00")
    number_renewal_days: int = 30

    # Currency label only; amounts are never converted
    currency: str = "USD"

    class Config:
        env_file = ".env"
        env_prefix = "TELEBILL_"


@dataclass(frozen=True)
class BillingRates:
    """Pricing snapshot injected into the ledger."""

    min_required_balance: Decimal = Decimal("5.00")
    call_rate_per_minute: Decimal = Decimal("0.02")
    monthly_free_minutes: int = 200
    phone_number_monthly_price: Decimal = Decimal("2.00")
    number_renewal_days: int = 30
    currency: str = "USD"

    def __post_init__(self) -> None:
        if self.monthly_free_minutes < 0:
            raise ValueError("monthly_free_minutes must be non-negative")
        if self.call_rate_per_minute < 0:
            raise ValueError("call_rate_per_minute must be non-negative")
        if self.phone_number_monthly_price < 0:
            raise ValueError("phone_number_monthly_price must be non-negative")
        if self.number_renewal_days <= 0:
            raise ValueError("number_renewal_days must be positive")

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "BillingRates":
        source = source or settings
        return cls(
            min_required_balance=source.min_required_balance,
            call_rate_per_minute=source.call_rate_per_minute,
            monthly_free_minutes=source.monthly_free_minutes,
            phone_number_monthly_price=source.phone_number_monthly_price,
            number_renewal_days=source.number_renewal_days,
            currency=source.currency,
        )

    def as_dict(self) -> dict:
        return {
            "min_required_balance": str(self.min_required_balance),
            "call_rate_per_minute": str(self.call_rate_per_minute),
            "monthly_free_minutes": self.monthly_free_minutes,
            "phone_number_monthly_price": str(self.phone_number_monthly_price),
            "number_renewal_days": self.number_renewal_days,
            "currency": self.currency,
        }


settings = Settings()

logger.info(
    "telebill pricing: rate=%s/min free=%d min/month number=%s/month",
    settings.call_rate_per_minute,
    settings.monthly_free_minutes,
    settings.phone_number_monthly_price,
)
