"""message tracking and no-show risk columns

Revision ID: 20261018_01
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("client_id", sa.String(), primary_key=True),
        sa.Column("first_name", sa.String(), nullable=False, server_default=""),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("visit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("no_show_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_vip", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        "services",
        sa.Column("service_id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_table(
        "conversations",
        sa.Column("conversation_id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.client_id"), nullable=True),
        sa.Column("service_window_expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), sa.ForeignKey("clients.client_id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.service_id"), nullable=False),
        sa.Column("appointment_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("no_show_risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prevention_actions", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("confirmation_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_engagement_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "message_tracking",
        sa.Column("message_id", sa.String(), primary_key=True),
        sa.Column("conversation_id", sa.String(), sa.ForeignKey("conversations.conversation_id"), nullable=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="sent"),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("read_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("follow_up_scheduled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("follow_up_sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalation_triggered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_check_tier", sa.String(), nullable=True),
        sa.Column("next_check_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "message_type IN ('confirmation', 'reminder', 'follow_up', 'escalation')",
            name="ck_message_tracking_type",
        ),
        sa.CheckConstraint(
            "status IN ('sent', 'delivered', 'read', 'failed')",
            name="ck_message_tracking_status",
        ),
        sa.CheckConstraint(
            "read_at IS NULL OR (delivered_at IS NOT NULL AND delivered_at <= read_at)",
            name="ck_message_tracking_read_after_delivered",
        ),
    )
    op.create_index("ix_message_tracking_booking", "message_tracking", ["booking_id", "message_type"])
    op.create_index("ix_message_tracking_next_check", "message_tracking", ["next_check_at"])


def downgrade() -> None:
    op.drop_index("ix_message_tracking_next_check", table_name="message_tracking")
    op.drop_index("ix_message_tracking_booking", table_name="message_tracking")
    op.drop_table("message_tracking")
    op.drop_table("bookings")
    op.drop_table("conversations")
    op.drop_table("services")
    op.drop_table("clients")
