"""Server-side event collection: dedup, forward, record.

Order per event:

1. look up ``event_id`` in today's UTC partition; a hit short-circuits
   before any side effect
2. forward to every configured target (failures logged, never fatal)
3. write the idempotency record

An unreachable or unconfigured store disables dedup instead of blocking
ingestion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from pulse.analytics.types import Clock, utc_now
from pulse.services.forwarding import Forwarder
from pulse.services.idempotency import IdempotencyStore, partition_key

logger = logging.getLogger(__name__)

# canonical 8-4-4-4-12 form; the id is echoed back exactly as sent
UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"


class EventPayload(BaseModel):
    event_id: str = Field(pattern=UUID_PATTERN)
    event_name: str = Field(min_length=1, max_length=100)
    event_type: Literal["conversion", "track"]
    properties: dict[str, Any]
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _iso_string(cls, value: Any) -> datetime:
        if not isinstance(value, str):
            raise ValueError("timestamp must be an ISO-8601 string")
        return datetime.fromisoformat(value)


@dataclass
class CollectResult:
    status: Literal["success", "duplicate"]
    event_id: str
    processed_at: datetime | None = None
    forwarded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class EventCollector:
    def __init__(
        self,
        store: IdempotencyStore | None,
        forwarders: list[Forwarder] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.forwarders = list(forwarders or [])
        self._clock = clock

    async def is_duplicate(self, payload: EventPayload) -> bool:
        if self.store is None:
            return False
        try:
            return await self.store.exists(partition_key(self._clock()), payload.event_id)
        except Exception:
            logger.exception("Idempotency lookup failed, treating %s as new", payload.event_id)
            return False

    async def _forward(self, payload: EventPayload, result: CollectResult) -> None:
        for forwarder in self.forwarders:
            try:
                await forwarder.forward(payload)
            except Exception:
                logger.exception("Failed to forward %s to %s", payload.event_id, forwarder.name)
                result.failed.append(forwarder.name)
            else:
                result.forwarded.append(forwarder.name)

    async def _mark_processed(self, payload: EventPayload, processed_at: datetime) -> None:
        if self.store is None:
            return
        try:
            await self.store.record(
                partition_key(processed_at),
                payload.event_id,
                payload.event_name,
                processed_at,
            )
        except Exception:
            logger.exception("Failed to mark %s as processed", payload.event_id)

    async def process(self, payload: EventPayload) -> CollectResult:
        event_id = payload.event_id
        if await self.is_duplicate(payload):
            logger.info("Duplicate event ignored: %s", event_id)
            return CollectResult(status="duplicate", event_id=event_id)

        logger.info(
            "Processing event %s (%s, %s)", event_id, payload.event_name, payload.event_type
        )
        result = CollectResult(status="success", event_id=event_id)
        await self._forward(payload, result)

        result.processed_at = self._clock()
        await self._mark_processed(payload, result.processed_at)
        return result
