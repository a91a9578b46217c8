"""ledger tables: accounts, call billing records, number subscriptions, ledger entries

Revision ID: 001_initial_ledger
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("free_minutes_remaining", sa.Integer, nullable=False, server_default="0"),
        sa.Column("free_minutes_last_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_claimed_free_number", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "call_billing_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("call_reference", sa.String(128), nullable=False),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("duration_seconds", sa.Integer, nullable=True),
        sa.Column("is_billed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("billed_minutes", sa.Integer, nullable=True),
        sa.Column("billed_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_call_billing_records_call_reference", "call_billing_records", ["call_reference"], unique=True)
    op.create_index("ix_call_billing_records_account_id", "call_billing_records", ["account_id"])
    op.create_index("ix_call_billing_records_is_billed", "call_billing_records", ["is_billed"])

    op.create_table(
        "number_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("is_free", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("next_renewal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_number_subscriptions_account_id", "number_subscriptions", ["account_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("free_minutes_delta", sa.Integer, nullable=False, server_default="0"),
        sa.Column("billed_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ledger_entries_account_id", "ledger_entries", ["account_id"])
    op.create_index("ix_ledger_entries_kind", "ledger_entries", ["kind"])


def downgrade() -> None:
    op.drop_table("ledger_entries")
    op.drop_table("number_subscriptions")
    op.drop_table("call_billing_records")
    op.drop_table("accounts")
