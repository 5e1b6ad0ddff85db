"""create subscription lifecycle tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "tracked_subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="USD"),
        sa.Column("billing_cycle", sa.String(length=32), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="CREDIT_CARD"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_billing_date", sa.Date(), nullable=False),
        sa.Column("last_billing_date", sa.Date(), nullable=True),
        sa.Column("cancellation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_spent", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_phase", sa.String(length=32), nullable=False, server_default="NOT_TRIALING"),
        sa.Column("trial_start_date", sa.Date(), nullable=True),
        sa.Column("trial_end_date", sa.Date(), nullable=True),
        sa.Column("will_convert_to_paid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("price_after_trial", sa.Numeric(18, 2), nullable=True),
        sa.Column("trial_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enable_renewal_reminder", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_days_before", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("reminder_time", sa.Time(), nullable=True),
        sa.Column("last_reminder_sent", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_price_change", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_date", sa.Date(), nullable=True),
        sa.Column("cancellation_difficulty", sa.String(length=16), nullable=True),
        sa.Column("alternative_suggestions", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("observed_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("observed_reminder_config", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_tracked_subscription_next_billing",
        "tracked_subscription",
        ["is_active", "next_billing_date"],
        unique=False,
    )

    op.create_table(
        "subscription_price_change",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("old_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("new_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("change_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("detected_automatically", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["subscription_id"], ["tracked_subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_price_change_subscription_date",
        "subscription_price_change",
        ["subscription_id", "change_date"],
        unique=False,
    )

    op.create_table(
        "subscription_reminder",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="SCHEDULED"),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("message", sa.String(length=1024), nullable=False),
        sa.Column("dedup_key", sa.String(length=255), nullable=False),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["tracked_subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_reminder_subscription_status",
        "subscription_reminder",
        ["subscription_id", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_reminder_subscription_status", table_name="subscription_reminder")
    op.drop_table("subscription_reminder")
    op.drop_index("ix_subscription_price_change_subscription_date", table_name="subscription_price_change")
    op.drop_table("subscription_price_change")
    op.drop_index("ix_tracked_subscription_next_billing", table_name="tracked_subscription")
    op.drop_table("tracked_subscription")
