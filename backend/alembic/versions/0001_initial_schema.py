"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the capacity reservation tables: events, event_participants,
join_requests, request_transitions.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_WHERE = sa.text("status IN ('pending', 'waitlisted', 'approved')")


def upgrade() -> None:
    # --- events ---
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(36), primary_key=True),
        sa.Column("host_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("capacity_total", sa.Integer, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("capacity_total IS NULL OR capacity_total >= 0", name="ck_events_capacity_total"),
    )

    # --- event_participants ---
    op.create_table(
        "event_participants",
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), primary_key=True),
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="accepted"),
        sa.Column("party_size", sa.Integer, nullable=False, server_default="1"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("party_size >= 1", name="ck_participants_party_size_positive"),
    )

    # --- join_requests ---
    op.create_table(
        "join_requests",
        sa.Column("request_id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("party_size", sa.Integer, nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waitlist_pos", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("party_size >= 1", name="ck_join_requests_party_size_positive"),
    )
    op.create_index("ix_join_requests_event_status", "join_requests", ["event_id", "status"])
    op.create_index(
        "ix_join_requests_waitlist", "join_requests", ["event_id", "status", "waitlist_pos", "created_at"]
    )
    op.create_index(
        "uq_join_requests_active_per_user",
        "join_requests",
        ["event_id", "user_id"],
        unique=True,
        postgresql_where=ACTIVE_WHERE,
        sqlite_where=ACTIVE_WHERE,
    )
    # Sweeper scan: pending rows ordered by expiry
    op.create_index(
        "ix_join_requests_pending_hold",
        "join_requests",
        ["hold_expires_at"],
        postgresql_where=sa.text("status = 'pending' AND hold_expires_at IS NOT NULL"),
    )

    # --- request_transitions ---
    op.create_table(
        "request_transitions",
        sa.Column("transition_id", sa.String(36), primary_key=True),
        sa.Column("request_id", sa.String(36), sa.ForeignKey("join_requests.request_id"), nullable=False),
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), nullable=False),
        sa.Column("actor_user_id", sa.String(36), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_request_transitions_request_id", "request_transitions", ["request_id"])


def downgrade() -> None:
    op.drop_index("ix_request_transitions_request_id", table_name="request_transitions")
    op.drop_table("request_transitions")
    op.drop_index("ix_join_requests_pending_hold", table_name="join_requests")
    op.drop_index("uq_join_requests_active_per_user", table_name="join_requests")
    op.drop_index("ix_join_requests_waitlist", table_name="join_requests")
    op.drop_index("ix_join_requests_event_status", table_name="join_requests")
    op.drop_table("join_requests")
    op.drop_table("event_participants")
    op.drop_table("events")
