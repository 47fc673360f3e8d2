"""Add subscriptions, subscription_payments ledger and webhook_events inbox.

Revision ID: 002
Revises: 001
Create Date: 2025-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("provider_agreement_id", sa.String(255), nullable=True),
        sa.Column("plan", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("billing_frequency", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("billing_frequency_type", sa.String(16), nullable=False, server_default="months"),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_trial_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_status", sa.String(32), nullable=True),
        sa.Column("last_payment_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_agreement_id", name="uq_subscriptions_provider_agreement_id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=False)
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"], unique=False)
    op.create_index(
        "ix_subscriptions_provider_agreement_id", "subscriptions", ["provider_agreement_id"], unique=True
    )
    op.create_index(
        "uq_subscriptions_user_active",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'authorized', 'paused')"),
    )

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("provider_payment_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("status_detail", sa.String(128), nullable=True),
        sa.Column("payment_method_id", sa.String(64), nullable=True),
        sa.Column("payment_type", sa.String(64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_payment_id", name="uq_subscription_payments_provider_payment_id"),
    )
    op.create_index(
        "ix_subscription_payments_subscription_id", "subscription_payments", ["subscription_id"], unique=False
    )
    op.create_index(
        "ix_subscription_payments_provider_payment_id",
        "subscription_payments",
        ["provider_payment_id"],
        unique=True,
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("topic", sa.String(64), nullable=True),
        sa.Column("action", sa.String(64), nullable=True),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_events_topic", "webhook_events", ["topic"], unique=False)
    op.create_index("ix_webhook_events_resource_id", "webhook_events", ["resource_id"], unique=False)
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_resource_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_topic", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_subscription_payments_provider_payment_id", table_name="subscription_payments")
    op.drop_index("ix_subscription_payments_subscription_id", table_name="subscription_payments")
    op.drop_table("subscription_payments")

    op.drop_index("uq_subscriptions_user_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_agreement_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
