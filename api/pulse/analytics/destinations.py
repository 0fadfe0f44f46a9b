"""Destinations: consumers of canonical events.

A sink is anything callable with a ``CanonicalEvent``.  It may return an
awaitable (network I/O); the registry schedules it on the running loop and
never awaits it from ``dispatch``, so a slow or failing sink cannot hold up
the caller or the other sinks.  Retries are the sink's own business.

When ``dispatch`` runs outside any event loop (a worker thread, a sync
endpoint), deliveries are handed to the loop bound with ``bind_loop``.

``Destination`` is the base for configured SDK sinks.  Each one carries a
status instead of a nullable client handle:

- ``disabled``: not configured (missing credentials / endpoint)
- ``pending``:  configured, waiting for consent in its category
- ``ready``:    configured and allowed to send
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from pulse.analytics.consent import ConsentGate
from pulse.analytics.events import CanonicalEvent, EventType, sanitize_event_name
from pulse.analytics.types import ConsentCategory

logger = logging.getLogger(__name__)

Sink = Callable[[CanonicalEvent], "Awaitable[None] | None"]

MEASUREMENT_PROTOCOL_URL = "https://www.google-analytics.com/mp/collect"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class DestinationRegistry:
    def __init__(self) -> None:
        self._sinks: list[Sink] = []
        self._pending: set[asyncio.Task] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    def __len__(self) -> int:
        return len(self._sinks)

    @property
    def sinks(self) -> list[Sink]:
        return list(self._sinks)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    def register(self, sink: Sink) -> None:
        self._sinks.append(sink)

    def clear(self) -> None:
        self._sinks.clear()

    def dispatch(self, event: CanonicalEvent) -> None:
        """Hand ``event`` to every sink; one sink's failure never affects another."""
        for sink in list(self._sinks):
            try:
                result = sink(event)
            except Exception:
                logger.exception("Destination %r failed", sink)
                continue
            if inspect.isawaitable(result):
                self._schedule(sink, result)

    def _schedule(self, sink: Sink, awaitable: Awaitable[Any]) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._schedule_threadsafe(sink, awaitable)
            return
        self._start_delivery(sink, awaitable)

    def _schedule_threadsafe(self, sink: Sink, awaitable: Awaitable[Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("No event loop bound, dropping async delivery to %r", sink)
            _discard(awaitable)
            return
        try:
            loop.call_soon_threadsafe(self._start_delivery, sink, awaitable)
        except RuntimeError:
            logger.warning("Bound event loop is closed, dropping async delivery to %r", sink)
            _discard(awaitable)

    def _start_delivery(self, sink: Sink, awaitable: Awaitable[Any]) -> None:
        # runs on the loop thread, so _pending is only touched there
        task = asyncio.get_running_loop().create_task(_deliver(sink, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def refresh(self) -> None:
        """Recompute the status of every ``Destination`` sink."""
        for sink in self._sinks:
            if isinstance(sink, Destination):
                sink.refresh_status()


def _discard(awaitable: Awaitable[Any]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


async def _deliver(sink: Sink, awaitable: Awaitable[Any]) -> None:
    try:
        await awaitable
    except Exception:
        logger.exception("Destination %r failed during delivery", sink)


# ---------------------------------------------------------------------------
# Destination base
# ---------------------------------------------------------------------------

class DestinationStatus(str, enum.Enum):
    pending = "pending"
    ready = "ready"
    disabled = "disabled"


class Destination:
    """Consent-gated sink with a status variant.

    Subclasses set ``name`` and ``category`` and implement ``configured``
    and ``send``.
    """

    name = "destination"
    category: ConsentCategory = ConsentCategory.analytics

    def __init__(self, consent: ConsentGate) -> None:
        self.consent = consent
        self.status = DestinationStatus.disabled
        self.refresh_status()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.status.value}>"

    def configured(self) -> bool:
        raise NotImplementedError

    def refresh_status(self) -> DestinationStatus:
        if not self.configured():
            self.status = DestinationStatus.disabled
        elif self.consent.can_track(self.category):
            self.status = DestinationStatus.ready
        else:
            self.status = DestinationStatus.pending
        return self.status

    def accepts(self, event: CanonicalEvent) -> bool:
        return True

    def __call__(self, event: CanonicalEvent) -> Awaitable[None] | None:
        status = self.refresh_status()
        if status is not DestinationStatus.ready:
            logger.debug("%s is %s, skipping %s", self.name, status.value, event.type.value)
            return None
        if not self.accepts(event):
            return None
        return self.send(event)

    async def send(self, event: CanonicalEvent) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def event_wire_name(event: CanonicalEvent) -> str:
    if event.type is EventType.page_view:
        return "page_view"
    return sanitize_event_name(event.event_name or event.type.value)


def build_measurement_protocol_body(
    client_id: str,
    event_name: str,
    params: dict[str, Any],
) -> dict[str, Any]:
    return {
        "client_id": client_id or "unknown",
        "events": [{"name": sanitize_event_name(event_name), "params": params}],
    }


# ---------------------------------------------------------------------------
# Reference sinks
# ---------------------------------------------------------------------------

class MeasurementProtocolDestination(Destination):
    """Generic analytics SDK sink speaking the GA4 Measurement Protocol."""

    name = "measurement_protocol"
    category = ConsentCategory.analytics

    def __init__(
        self,
        consent: ConsentGate,
        measurement_id: str,
        api_secret: str,
        http_client: httpx.AsyncClient | None = None,
        url: str = MEASUREMENT_PROTOCOL_URL,
    ) -> None:
        self.measurement_id = measurement_id
        self.api_secret = api_secret
        self.url = url
        self._client = http_client
        super().__init__(consent)

    def configured(self) -> bool:
        return bool(self.measurement_id and self.api_secret)

    async def send(self, event: CanonicalEvent) -> None:
        params = dict(event.properties)
        if event.event_id:
            params["event_id"] = event.event_id
        body = build_measurement_protocol_body(
            str(event.properties.get("anonymous_id", "")),
            event_wire_name(event),
            params,
        )
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(
                self.url,
                params={"measurement_id": self.measurement_id, "api_secret": self.api_secret},
                json=body,
            )
            response.raise_for_status()
        finally:
            if self._client is None:
                await client.aclose()


class TelemetryDestination(Destination):
    """Telemetry SDK sink posting event / page-view envelopes."""

    name = "telemetry"
    category = ConsentCategory.analytics

    def __init__(
        self,
        consent: ConsentGate,
        endpoint: str,
        instrumentation_key: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.instrumentation_key = instrumentation_key
        self._client = http_client
        super().__init__(consent)

    def configured(self) -> bool:
        return bool(self.endpoint and self.instrumentation_key)

    def envelope(self, event: CanonicalEvent) -> dict[str, Any]:
        is_page = event.type is EventType.page_view
        properties = {k: v for k, v in event.properties.items() if v is not None}
        return {
            "name": "PageView" if is_page else "Event",
            "time": event.properties.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            "iKey": self.instrumentation_key,
            "tags": {
                "ai.session.id": event.properties.get("session_id"),
                "ai.user.id": event.properties.get("anonymous_id"),
            },
            "data": {
                "baseType": "PageViewData" if is_page else "EventData",
                "baseData": {
                    "name": event.properties.get("page_name") if is_page else event.event_name,
                    "url": event.properties.get("page_url"),
                    "properties": properties,
                },
            },
        }

    async def send(self, event: CanonicalEvent) -> None:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(self.endpoint, json=[self.envelope(event)])
            response.raise_for_status()
        finally:
            if self._client is None:
                await client.aclose()


class CollectorDestination(Destination):
    """Posts conversions to the server event collector for server-side recording."""

    name = "collector"
    category = ConsentCategory.analytics

    def __init__(
        self,
        consent: ConsentGate,
        endpoint: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = http_client
        super().__init__(consent)

    def configured(self) -> bool:
        return bool(self.endpoint)

    def accepts(self, event: CanonicalEvent) -> bool:
        return event.type is EventType.conversion and bool(event.event_id)

    def payload(self, event: CanonicalEvent) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "event_name": event.event_name,
            "event_type": event.type.value,
            "properties": event.properties,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def send(self, event: CanonicalEvent) -> None:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(self.endpoint, json=self.payload(event))
            if response.status_code == 429:
                logger.warning("Collector rate limited conversion %s", event.event_id)
                return
            response.raise_for_status()
        finally:
            if self._client is None:
                await client.aclose()
