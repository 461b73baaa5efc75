"""create notifications_outbox table

Revision ID: 8e4b6f0c1a95
Revises: 3c9e1d7a2b40
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8e4b6f0c1a95"
down_revision: Union[str, None] = "3c9e1d7a2b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "notifications_outbox",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.Column("last_error", sa.Text(), nullable=True),

        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("subscription_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("billing_record_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=True),

        sa.Column("channel", sa.String(length=20), nullable=False, server_default="email"),
        sa.Column("to_email", sa.Text(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body_text", sa.Text(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'sending', 'sent', 'dead')",
            name="ck_notifications_outbox_status_valid",
        ),
    )

    op.create_index("ix_notifications_outbox_subscription_id", "notifications_outbox", ["subscription_id"])
    op.create_index("ix_notifications_outbox_status_next", "notifications_outbox", ["status", "next_attempt_at"])


def downgrade() -> None:
    op.drop_index("ix_notifications_outbox_status_next", table_name="notifications_outbox")
    op.drop_index("ix_notifications_outbox_subscription_id", table_name="notifications_outbox")
    op.drop_table("notifications_outbox")
