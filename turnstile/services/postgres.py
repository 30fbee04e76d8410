from __future__ import annotations

import asyncio
from dataclasses import dataclass

import asyncpg

from turnstile.errors import TurnstileError

REQUIRED_TABLES: tuple[str, ...] = ("tickets", "scan_logs")


class SchemaNotReadyError(TurnstileError):
    """Raised when the database is reachable but the ticket tables are missing."""

    def __init__(self, missing: tuple[str, ...]) -> None:
        super().__init__(f"Missing ticket tables: {', '.join(missing)}")
        self.missing = missing


@dataclass(slots=True)
class PostgresConnectionTester:
    """Readiness probe for the ticket database.

    The database only counts as ready once the ticket and scan log tables
    exist, so a gate never starts redeeming against an unmigrated schema.
    """

    dsn: str
    required_tables: tuple[str, ...] = REQUIRED_TABLES
    _pool: asyncpg.Pool | None = None

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self.dsn, min_size=1, max_size=1)
        return self._pool

    async def missing_tables(self) -> tuple[str, ...]:
        pool = await self.get_pool()
        missing: list[str] = []
        async with pool.acquire() as connection:
            for table in self.required_tables:
                if await connection.fetchval("SELECT to_regclass($1)", table) is None:
                    missing.append(table)
        return tuple(missing)

    async def test_connection(self) -> bool:
        missing = await self.missing_tables()
        if missing:
            raise SchemaNotReadyError(missing)
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def test_connection_sync(self, timeout: float = 5.0) -> bool:
        """Blocking helper for deployment scripts that run outside an event loop."""

        return asyncio.run(asyncio.wait_for(self.test_connection(), timeout=timeout))
