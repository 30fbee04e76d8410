from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from turnstile.credentials.models import TicketClass
from turnstile.db.models import ScanLogTable, TicketTable

from .models import ScanLogEntry, TicketRecord
from .state import TicketStateMachine, TicketStatus
from .store import StoreUnavailableError, TicketAlreadyExistsError

logger = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError, asyncio.TimeoutError)


class SqlTicketStore:
    """Ticket store backed by the relational database.

    Status changes are single conditional ``UPDATE ... WHERE status = :expected``
    statements, so concurrent gates racing on one ticket are decided by the
    database: exactly one statement matches a row, the others match none.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except _CONNECTIVITY_ERRORS as exc:
            logger.warning("Ticket store unreachable: %s", exc)
            raise StoreUnavailableError("Ticket store is unavailable") from exc

    async def get(self, ticket_id: str) -> TicketRecord | None:
        async with self._session() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            return self._table_to_record(row)

    async def create(
        self,
        ticket_id: str,
        event_id: str,
        holder_id: str,
        *,
        ticket_class: TicketClass,
        credential: str | None = None,
    ) -> TicketRecord:
        record = TicketRecord(
            ticket_id=ticket_id,
            event_id=event_id,
            holder_id=holder_id,
            ticket_class=TicketClass(ticket_class),
            status=TicketStateMachine.initial_state(),
            created_at=datetime.now(timezone.utc),
            credential=credential,
        )
        try:
            async with self._session() as session:
                async with session.begin():
                    session.add(
                        TicketTable(
                            id=record.ticket_id,
                            event_id=record.event_id,
                            holder_id=record.holder_id,
                            ticket_class=record.ticket_class.value,
                            status=record.status.value,
                            credential=record.credential,
                            created_at=record.created_at,
                        )
                    )
        except IntegrityError as exc:
            raise TicketAlreadyExistsError(f"Ticket {ticket_id} already exists") from exc
        return record

    async def try_mark_used(
        self,
        ticket_id: str,
        *,
        used_at: datetime,
        gate_id: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        if not TicketStateMachine.can_transition(expected_status, TicketStatus.USED):
            return False
        return await self._conditional_update(
            ticket_id,
            expected_status,
            status=TicketStatus.USED.value,
            used_at=used_at,
            used_by_gate=gate_id,
        )

    async def try_cancel(
        self,
        ticket_id: str,
        *,
        cancelled_at: datetime,
        reason: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        if not TicketStateMachine.can_transition(expected_status, TicketStatus.CANCELLED):
            return False
        return await self._conditional_update(
            ticket_id,
            expected_status,
            status=TicketStatus.CANCELLED.value,
            cancelled_at=cancelled_at,
            cancellation_reason=reason,
        )

    async def record_scan(self, entry: ScanLogEntry) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(
                    ScanLogTable(
                        id=entry.id,
                        ticket_id=entry.ticket_id,
                        event_id=entry.event_id,
                        gate_id=entry.gate_id,
                        outcome=entry.outcome,
                        reason=entry.reason,
                        scanned_at=entry.scanned_at,
                        metadata_=dict(entry.metadata),
                    )
                )

    async def list_scans(self, ticket_id: str) -> Sequence[ScanLogEntry]:
        async with self._session() as session:
            result = await session.execute(
                select(ScanLogTable)
                .where(ScanLogTable.ticket_id == ticket_id)
                .order_by(ScanLogTable.scanned_at.asc())
            )
            return [self._table_to_scan(row) for row in result.scalars().all()]

    async def _conditional_update(self, ticket_id: str, expected: TicketStatus, **values: object) -> bool:
        statement = (
            update(TicketTable)
            .where(TicketTable.id == ticket_id, TicketTable.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(statement)
        return result.rowcount == 1

    @staticmethod
    def _table_to_record(row: TicketTable) -> TicketRecord:
        return TicketRecord(
            ticket_id=row.id,
            event_id=row.event_id,
            holder_id=row.holder_id,
            ticket_class=TicketClass(row.ticket_class),
            status=TicketStatus(row.status),
            created_at=_ensure_datetime(row.created_at),
            used_at=_optional_datetime(row.used_at),
            used_by_gate=row.used_by_gate,
            cancelled_at=_optional_datetime(row.cancelled_at),
            cancellation_reason=row.cancellation_reason,
            credential=row.credential,
        )

    @staticmethod
    def _table_to_scan(row: ScanLogTable) -> ScanLogEntry:
        return ScanLogEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            event_id=row.event_id,
            gate_id=row.gate_id,
            outcome=row.outcome,
            reason=row.reason,
            scanned_at=_ensure_datetime(row.scanned_at),
            metadata=dict(row.metadata_ or {}),
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return _ensure_datetime(value)
