"""Create payment record/event log and credit ledger tables.

Revision ID: 3f1c9a7e2b40
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "3f1c9a7e2b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_record",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("price_id", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("billing_interval", sa.String(10), nullable=False, server_default="none"),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_event_at", sa.BigInteger, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_payment_record"),
        sa.UniqueConstraint("subscription_id", name="uq_payment_record_subscription_id"),
    )
    op.create_index("ix_payment_record_user_id", "payment_record", ["user_id"])
    op.create_index("ix_payment_record_customer_id", "payment_record", ["customer_id"])
    op.create_index("ix_payment_record_user_status", "payment_record", ["user_id", "status"])

    op.create_table(
        "payment_event",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("payment_record_id", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("raw_payload", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_payment_event"),
        sa.ForeignKeyConstraint(
            ["payment_record_id"], ["payment_record.id"],
            name="fk_payment_event_payment_record_id_payment_record",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("provider_event_id", name="uq_payment_event_provider_event_id"),
    )
    op.create_index("ix_payment_event_payment_record_id", "payment_event", ["payment_record_id"])
    op.create_index("ix_payment_event_event_type", "payment_event", ["event_type"])
    op.create_index("ix_payment_event_created_at", "payment_event", ["created_at"])

    op.create_table(
        "credit_account",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("frozen_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_credit_account"),
        sa.UniqueConstraint("user_id", name="uq_credit_account_user_id"),
        sa.CheckConstraint("frozen_balance >= 0", name="ck_credit_account_frozen_nonneg"),
        sa.CheckConstraint("balance - frozen_balance >= 0", name="ck_credit_account_available_nonneg"),
    )

    op.create_table(
        "credit_transaction",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_credit_transaction"),
        sa.UniqueConstraint("user_id", "type", "reference_id", name="uq_credit_transaction_reference"),
    )
    op.create_index("ix_credit_transaction_created_at", "credit_transaction", ["created_at"])
    op.create_index("ix_credit_transaction_user_created", "credit_transaction", ["user_id", "created_at"])

    op.create_table(
        "credit_dead_letter",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("provider_event_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_credit_dead_letter"),
    )
    op.create_index("ix_credit_dead_letter_user_id", "credit_dead_letter", ["user_id"])
    op.create_index("ix_credit_dead_letter_status", "credit_dead_letter", ["status"])


def downgrade() -> None:
    op.drop_table("credit_dead_letter")
    op.drop_table("credit_transaction")
    op.drop_table("credit_account")
    op.drop_table("payment_event")
    op.drop_table("payment_record")
