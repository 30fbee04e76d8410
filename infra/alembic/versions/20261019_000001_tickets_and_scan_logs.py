"""Ticket records and gate scan log."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tickets",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("holder_id", sa.String(length=64), nullable=False),
        sa.Column("ticket_class", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("credential", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("used_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("used_by_gate", sa.String(length=100), nullable=True),
        sa.Column("cancelled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_tickets_holder_id", "tickets", ["holder_id"])
    op.create_index("ix_tickets_event_status", "tickets", ["event_id", "status"])

    # No foreign key: scans of unknown tickets are logged too.
    op.create_table(
        "scan_logs",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("ticket_id", sa.String(length=64), nullable=True),
        sa.Column("event_id", sa.String(length=64), nullable=True),
        sa.Column("gate_id", sa.String(length=100), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=True),
        sa.Column("scanned_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
    )
    op.create_index("ix_scan_logs_ticket_id", "scan_logs", ["ticket_id"])


def downgrade() -> None:
    op.drop_index("ix_scan_logs_ticket_id", table_name="scan_logs")
    op.drop_table("scan_logs")
    op.drop_index("ix_tickets_event_status", table_name="tickets")
    op.drop_index("ix_tickets_holder_id", table_name="tickets")
    op.drop_table("tickets")
