"""Best-effort forwarding of collected events to downstream systems.

Forwarders raise on failure; the collector catches and logs each one
separately so a broken target never fails the request or skips the others.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from pulse.analytics.destinations import MEASUREMENT_PROTOCOL_URL, build_measurement_protocol_body
from pulse.analytics.types import Clock, utc_now
from pulse.core.config import Settings

if TYPE_CHECKING:
    from pulse.services.collector import EventPayload

logger = logging.getLogger(__name__)


class Forwarder(Protocol):
    name: str

    async def forward(self, payload: "EventPayload") -> None: ...


class MeasurementProtocolForwarder:
    name = "measurement_protocol"

    def __init__(
        self,
        client: httpx.AsyncClient,
        measurement_id: str,
        api_secret: str,
        url: str = MEASUREMENT_PROTOCOL_URL,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self.measurement_id = measurement_id
        self.api_secret = api_secret
        self.url = url
        self._clock = clock

    def body(self, payload: "EventPayload") -> dict[str, Any]:
        params = {
            **payload.properties,
            "event_id": payload.event_id,
            "server_timestamp": self._clock().isoformat(),
        }
        client_id = str(payload.properties.get("anonymous_id") or "")
        return build_measurement_protocol_body(client_id, payload.event_name, params)

    async def forward(self, payload: "EventPayload") -> None:
        response = await self._client.post(
            self.url,
            params={"measurement_id": self.measurement_id, "api_secret": self.api_secret},
            json=self.body(payload),
        )
        response.raise_for_status()


class DataLakeForwarder:
    """Posts the validated payload, stamped with ``received_at``, to an ingestion endpoint."""

    name = "data_lake"

    def __init__(self, client: httpx.AsyncClient, endpoint: str, clock: Clock = utc_now) -> None:
        self._client = client
        self.endpoint = endpoint
        self._clock = clock

    def record(self, payload: "EventPayload") -> dict[str, Any]:
        return {**payload.model_dump(mode="json"), "received_at": self._clock().isoformat()}

    async def forward(self, payload: "EventPayload") -> None:
        response = await self._client.post(self.endpoint, json=self.record(payload))
        response.raise_for_status()


def build_forwarders(settings: Settings, client: httpx.AsyncClient) -> list[Forwarder]:
    forwarders: list[Forwarder] = []
    if settings.GA4_MEASUREMENT_ID and settings.GA4_API_SECRET:
        forwarders.append(
            MeasurementProtocolForwarder(client, settings.GA4_MEASUREMENT_ID, settings.GA4_API_SECRET)
        )
    if settings.DATA_LAKE_ENDPOINT:
        forwarders.append(DataLakeForwarder(client, settings.DATA_LAKE_ENDPOINT))
    logger.info("Event forwarders: %s", [f.name for f in forwarders] or "none")
    return forwarders
