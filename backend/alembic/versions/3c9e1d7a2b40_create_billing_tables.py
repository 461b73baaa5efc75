"""create users, plans, subscriptions, billing_records and status history

Revision ID: 3c9e1d7a2b40
Revises:
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3c9e1d7a2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBSCRIPTION_STATUS = ("pending", "trial_active", "active", "past_due", "paused", "cancelled", "expired")
BILLING_CYCLE = ("daily", "weekly", "monthly", "quarterly", "annual")
BILLING_RECORD_STATUS = ("succeeded", "failed")
BILLING_FAILURE_KIND = ("declined", "gateway_unavailable")


def upgrade() -> None:
    # Enum types are created once up front; columns reference them with create_type=False.
    bind = op.get_bind()
    postgresql.ENUM(*SUBSCRIPTION_STATUS, name="subscription_status").create(bind, checkfirst=True)
    postgresql.ENUM(*BILLING_CYCLE, name="billing_cycle").create(bind, checkfirst=True)
    postgresql.ENUM(*BILLING_RECORD_STATUS, name="billing_record_status").create(bind, checkfirst=True)
    postgresql.ENUM(*BILLING_FAILURE_KIND, name="billing_failure_kind").create(bind, checkfirst=True)

    subscription_status = postgresql.ENUM(name="subscription_status", create_type=False)

    op.create_table(
        "users",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column(
            "billing_cycle",
            postgresql.ENUM(name="billing_cycle", create_type=False),
            nullable=False,
        ),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stripe_product_id", sa.Text(), nullable=True),
        sa.Column("stripe_price_id", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.Text(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("current_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("billing_cycle_anchor", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trial_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method_id", sa.Text(), nullable=True),
        sa.Column("gateway_customer_id", sa.Text(), nullable=True),
        sa.Column("gateway_subscription_id", sa.Text(), nullable=True),
        sa.Column("failed_payment_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_payment_error", sa.Text(), nullable=True),
        sa.Column("last_payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("failed_payment_attempts >= 0", name="ck_subscriptions_failed_attempts_non_negative"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_next_billing_date", "subscriptions", ["next_billing_date"])

    op.create_table(
        "billing_records",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(name="billing_record_status", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "failure_kind",
            postgresql.ENUM(name="billing_failure_kind", create_type=False),
            nullable=True,
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("gateway_transaction_id", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_transaction_id", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_billing_records_subscription_id", "billing_records", ["subscription_id"])
    op.create_index("ix_billing_records_user_id", "billing_records", ["user_id"])
    op.create_index("ix_billing_records_status", "billing_records", ["status"])
    op.create_index("ix_billing_records_created_at", "billing_records", ["created_at"])

    op.create_table(
        "subscription_status_history",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", subscription_status, nullable=False),
        sa.Column("to_status", subscription_status, nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("changed_by", sa.Text(), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_subscription_status_history_subscription_id",
        "subscription_status_history",
        ["subscription_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_status_history_subscription_id", table_name="subscription_status_history")
    op.drop_table("subscription_status_history")

    op.drop_index("ix_billing_records_created_at", table_name="billing_records")
    op.drop_index("ix_billing_records_status", table_name="billing_records")
    op.drop_index("ix_billing_records_user_id", table_name="billing_records")
    op.drop_index("ix_billing_records_subscription_id", table_name="billing_records")
    op.drop_table("billing_records")

    op.drop_index("ix_subscriptions_next_billing_date", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_table("plans")
    op.drop_table("users")

    bind = op.get_bind()
    for name in ("billing_failure_kind", "billing_record_status", "billing_cycle", "subscription_status"):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
