"""SQLModel table definitions for the Turnstile data layer."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class TicketTable(SQLModel, table=True):
    """Authoritative ticket records, one row per purchased ticket."""

    __tablename__ = "tickets"
    __table_args__ = (Index("ix_tickets_event_status", "event_id", "status"),)

    id: str = Field(sa_column=Column(String(64), primary_key=True))
    event_id: str = Field(sa_column=Column(String(64), nullable=False))
    holder_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    ticket_class: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    credential: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    used_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    used_by_gate: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancellation_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ScanLogTable(SQLModel, table=True):
    """Audit trail of every redemption decision taken at a gate."""

    __tablename__ = "scan_logs"

    id: str = Field(sa_column=Column(String(36), primary_key=True))
    ticket_id: str | None = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
    )
    event_id: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    gate_id: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    outcome: str = Field(sa_column=Column(String(20), nullable=False))
    reason: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    scanned_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
