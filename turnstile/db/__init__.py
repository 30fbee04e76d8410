"""Database models and utilities."""

from .models import ScanLogTable, TicketTable

__all__ = ["ScanLogTable", "TicketTable"]
