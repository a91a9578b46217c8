"""telebill: usage-metering and billing ledger for pay-per-minute telephony."""

__version__ = "0.4.0"
