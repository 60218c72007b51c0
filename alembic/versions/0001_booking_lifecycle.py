"""
Booking lifecycle tables

Revision ID: 0001_booking_lifecycle
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.sql import func


revision = "0001_booking_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "session_types",
        sa.Column("session_type_id", sa.String(length=36), primary_key=True),
        sa.Column("builder_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("calendly_event_type_uri", sa.String(length=512), nullable=True, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index("ix_session_types_builder_id", "session_types", ["builder_id"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("builder_id", sa.String(length=64), nullable=False),
        sa.Column(
            "session_type_id",
            sa.String(length=36),
            sa.ForeignKey("session_types.session_type_id"),
            nullable=False,
        ),
        sa.Column("client_id", sa.String(length=64), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("calendar_event_ref", sa.String(length=512), nullable=False),
        sa.Column("invitee_ref", sa.String(length=512), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invitee_email", sa.String(length=255), nullable=True),
        sa.Column("invitee_name", sa.String(length=255), nullable=True),
        sa.Column("custom_question_responses", sa.JSON(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("state", sa.String(length=32), nullable=False, server_default="CREATED"),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("payment_intent_ref", sa.String(length=255), nullable=True),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("last_transition_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.UniqueConstraint("builder_id", "calendar_event_ref", name="uq_bookings_builder_calendar_event"),
    )
    op.create_index("ix_bookings_session_type_id", "bookings", ["session_type_id"])
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_payment_ref", "bookings", ["payment_ref"])
    op.create_index("ix_bookings_builder_correlation", "bookings", ["builder_id", "correlation_id"])
    op.create_index("ix_bookings_state", "bookings", ["state"])

    op.create_table(
        "booking_transitions",
        sa.Column("transition_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_state", sa.String(length=32), nullable=False),
        sa.Column("to_state", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("external_ref", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index("ix_booking_transitions_booking", "booking_transitions", ["booking_id", "version"])

    op.create_table(
        "booking_event_dead_letters",
        sa.Column("dead_letter_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index(
        "ix_booking_event_dead_letters_booking_id", "booking_event_dead_letters", ["booking_id"]
    )

    op.create_table(
        "payment_webhook_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="queued"),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("booking_id", sa.String(length=36), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_webhook_events_status", "payment_webhook_events", ["status"])


def downgrade() -> None:
    op.drop_index("ix_payment_webhook_events_status", table_name="payment_webhook_events")
    op.drop_table("payment_webhook_events")
    op.drop_index("ix_booking_event_dead_letters_booking_id", table_name="booking_event_dead_letters")
    op.drop_table("booking_event_dead_letters")
    op.drop_index("ix_booking_transitions_booking", table_name="booking_transitions")
    op.drop_table("booking_transitions")
    for index in (
        "ix_bookings_state",
        "ix_bookings_builder_correlation",
        "ix_bookings_payment_ref",
        "ix_bookings_client_id",
        "ix_bookings_session_type_id",
    ):
        op.drop_index(index, table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_session_types_builder_id", table_name="session_types")
    op.drop_table("session_types")
