"""Idempotency records for the event collector.

A record is keyed by ``(partition_key, event_id)`` where the partition is the
UTC calendar date the event was received.  The same ``event_id`` submitted on
a later day is a new event; old partitions age out externally.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pulse.analytics.types import day_key
from pulse.core.database import create_engine, create_session_factory, session_scope
from pulse.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


def partition_key(now: datetime) -> str:
    return day_key(now)


class IdempotencyStore(Protocol):
    async def exists(self, partition: str, event_id: str) -> bool: ...

    async def record(
        self,
        partition: str,
        event_id: str,
        event_name: str,
        processed_at: datetime,
    ) -> bool: ...

    async def close(self) -> None: ...


class MemoryIdempotencyStore:
    """Process-local store; dedup only holds within one instance."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], tuple[str, datetime]] = {}

    async def exists(self, partition: str, event_id: str) -> bool:
        return (partition, event_id) in self.records

    async def record(
        self,
        partition: str,
        event_id: str,
        event_name: str,
        processed_at: datetime,
    ) -> bool:
        key = (partition, event_id)
        if key in self.records:
            return False
        self.records[key] = (event_name, processed_at)
        return True

    async def close(self) -> None:
        self.records.clear()


class SqlIdempotencyStore:
    """Shared store backed by the ``processed_events`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, url: str) -> "SqlIdempotencyStore":
        engine = create_engine(url)
        return cls(create_session_factory(engine), engine=engine)

    async def exists(self, partition: str, event_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessedEvent.event_id).where(
                    ProcessedEvent.partition_key == partition,
                    ProcessedEvent.event_id == event_id,
                )
            )
            return result.scalar_one_or_none() is not None

    async def record(
        self,
        partition: str,
        event_id: str,
        event_name: str,
        processed_at: datetime,
    ) -> bool:
        """Insert the record. Returns False if it already existed."""
        try:
            async with session_scope(self._session_factory) as session:
                session.add(
                    ProcessedEvent(
                        partition_key=partition,
                        event_id=event_id,
                        event_name=event_name,
                        processed_at=processed_at,
                    )
                )
        except IntegrityError:
            logger.debug("Idempotency record already exists: %s/%s", partition, event_id)
            return False
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


def build_idempotency_store(url: str) -> IdempotencyStore | None:
    """Store for ``url``; None (dedup disabled) when no URL is configured."""
    if not url:
        logger.info("No idempotency store configured, duplicate detection disabled")
        return None
    if url == MEMORY_URL:
        return MemoryIdempotencyStore()
    return SqlIdempotencyStore.from_url(url)
