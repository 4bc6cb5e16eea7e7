"""initial ledger schema: users, credit accounts, adjustments, subscriptions, payment events

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("ai_guru_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("kundali_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_prediction_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("legacy_ai_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("ai_guru_balance >= 0", name="ck_credit_accounts_ai_guru_non_negative"),
        sa.CheckConstraint("kundali_balance >= 0", name="ck_credit_accounts_kundali_non_negative"),
        sa.CheckConstraint(
            "lifetime_prediction_balance >= 0",
            name="ck_credit_accounts_lifetime_prediction_non_negative",
        ),
        sa.CheckConstraint("legacy_ai_questions >= 0", name="ck_credit_accounts_legacy_ai_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_adjustments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("credit_type", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("operation_key", sa.String(), nullable=False),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("operation_key"),
    )
    op.create_index("ix_credit_adjustments_user_id", "credit_adjustments", ["user_id"], unique=False)
    op.create_index("ix_credit_adjustments_reference_id", "credit_adjustments", ["reference_id"], unique=False)
    op.create_index("ix_credit_adjustments_created_at", "credit_adjustments", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_adjustments_user_created",
        "credit_adjustments",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "subscriptions",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_subscriptions_expires_at", "subscriptions", ["expires_at"], unique=False)
    op.create_index(
        "ix_subscriptions_provider_subscription_id",
        "subscriptions",
        ["provider_subscription_id"],
        unique=False,
    )

    op.create_table(
        "payment_events",
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("payment_id"),
    )
    op.create_index("ix_payment_events_user_id", "payment_events", ["user_id"], unique=False)
    op.create_index("ix_payment_events_processed_at", "payment_events", ["processed_at"], unique=False)

    op.create_table(
        "reconciliation_failures",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="retrying"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id"),
    )
    op.create_index("ix_reconciliation_failures_user_id", "reconciliation_failures", ["user_id"], unique=False)
    op.create_index("ix_reconciliation_failures_status", "reconciliation_failures", ["status"], unique=False)
    op.create_index(
        "ix_reconciliation_failures_created_at",
        "reconciliation_failures",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_reconciliation_failures_created_at", table_name="reconciliation_failures")
    op.drop_index("ix_reconciliation_failures_status", table_name="reconciliation_failures")
    op.drop_index("ix_reconciliation_failures_user_id", table_name="reconciliation_failures")
    op.drop_table("reconciliation_failures")

    op.drop_index("ix_payment_events_processed_at", table_name="payment_events")
    op.drop_index("ix_payment_events_user_id", table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("ix_subscriptions_provider_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_expires_at", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_credit_adjustments_user_created", table_name="credit_adjustments")
    op.drop_index("ix_credit_adjustments_created_at", table_name="credit_adjustments")
    op.drop_index("ix_credit_adjustments_reference_id", table_name="credit_adjustments")
    op.drop_index("ix_credit_adjustments_user_id", table_name="credit_adjustments")
    op.drop_table("credit_adjustments")

    op.drop_table("credit_accounts")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
