"""Connectivity helpers for external services."""

from .postgres import PostgresConnectionTester, SchemaNotReadyError

__all__ = ["PostgresConnectionTester", "SchemaNotReadyError"]
