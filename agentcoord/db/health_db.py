from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..errors import DatabaseError
from ..persistence.models import WorkerRecord
from ..persistence.repository import WorkerHealthStore
from .models import WorkerHealthRow


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(record: WorkerRecord) -> WorkerHealthRow:
    return WorkerHealthRow(
        worker_id=record.worker_id,
        status=record.status.value,
        reason=record.status_reason,
        metrics=record.metrics,
        metadata_=record.metadata,
        last_heartbeat=record.last_heartbeat,
        last_status_change=record.last_status_change,
        recovery_attempts=record.recovery_attempts,
        last_recovery_attempt=record.last_recovery_attempt,
        next_recovery_attempt=record.next_recovery_attempt,
        impact=record.impact,
        registered=record.registered,
        last_updated=record.last_updated,
    )


def _to_record(row: WorkerHealthRow) -> WorkerRecord:
    return WorkerRecord(
        worker_id=row.worker_id,
        status=row.status,
        status_reason=row.reason,
        metrics=dict(row.metrics or {}),
        metadata=dict(row.metadata_ or {}),
        last_heartbeat=_aware(row.last_heartbeat),
        last_status_change=_aware(row.last_status_change),
        recovery_attempts=row.recovery_attempts,
        last_recovery_attempt=_aware(row.last_recovery_attempt),
        next_recovery_attempt=_aware(row.next_recovery_attempt),
        impact=row.impact,
        registered=_aware(row.registered),
        last_updated=_aware(row.last_updated),
    )


class WorkerHealthDB(WorkerHealthStore):
    """Async SQL helper persisting worker health records."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialised = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialised = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialised:
            await self.init_db()
        try:
            async with AsyncSession(self.engine) as session:
                yield session
        except SQLAlchemyError as e:
            raise DatabaseError(f"Worker health store failed: {e}") from e

    async def upsert(self, record: WorkerRecord) -> None:
        async with self.session() as session:
            await session.merge(_to_row(record))
            await session.commit()

    async def get(self, worker_id: str) -> Optional[WorkerRecord]:
        async with self.session() as session:
            row = await session.get(WorkerHealthRow, worker_id)
            return _to_record(row) if row else None

    async def list_all(self) -> list[WorkerRecord]:
        async with self.session() as session:
            result = await session.execute(select(WorkerHealthRow))
            return [_to_record(row) for row in result.scalars().all()]

    async def find_by_status(self, status: str) -> list[WorkerRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(WorkerHealthRow).where(WorkerHealthRow.status == status)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def delete(self, worker_id: str) -> None:
        async with self.session() as session:
            row = await session.get(WorkerHealthRow, worker_id)
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def close(self) -> None:
        await self.engine.dispose()
