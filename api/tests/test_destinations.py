"""Tests for destination dispatch and the reference SDK sinks."""

import asyncio
import json

import httpx

from pulse.analytics.destinations import (
    CollectorDestination,
    DestinationRegistry,
    DestinationStatus,
    MeasurementProtocolDestination,
    TelemetryDestination,
    build_measurement_protocol_body,
)
from pulse.analytics.events import CanonicalEvent, EventType


def _event(**overrides) -> CanonicalEvent:
    data = {
        "type": EventType.track,
        "event_name": "cta_click",
        "event_id": "evt-1",
        "properties": {"anonymous_id": "anon-1", "session_id": "s-1", "page_url": "https://x"},
    }
    data.update(overrides)
    return CanonicalEvent(**data)


def _client(requests: list, status_code: int = 204) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestRegistry:
    def test_async_sink_is_scheduled_not_awaited(self):
        delivered = []

        async def run():
            gate = asyncio.Event()

            async def slow_sink(event):
                await gate.wait()
                delivered.append(event.event_name)

            registry = DestinationRegistry()
            registry.register(slow_sink)
            registry.dispatch(_event())
            assert registry.pending == 1
            assert delivered == []
            gate.set()
            await registry.drain()
            assert registry.pending == 0

        asyncio.run(run())
        assert delivered == ["cta_click"]

    def test_failing_async_sink_is_isolated(self, caplog):
        delivered = []

        async def broken(event):
            raise RuntimeError("network down")

        async def good(event):
            delivered.append(event.event_id)

        async def run():
            registry = DestinationRegistry()
            registry.register(broken)
            registry.register(good)
            registry.dispatch(_event())
            await registry.drain()

        asyncio.run(run())
        assert delivered == ["evt-1"]
        assert "failed during delivery" in caplog.text

    def test_async_sink_without_loop_is_dropped(self, caplog):
        async def sink(event):
            raise AssertionError("must not run")

        registry = DestinationRegistry()
        registry.register(sink)
        registry.dispatch(_event())
        assert registry.pending == 0
        assert "No event loop bound" in caplog.text

    def test_dispatch_from_worker_thread_uses_bound_loop(self):
        delivered = []

        async def sink(event):
            delivered.append(event.event_name)

        async def run():
            registry = DestinationRegistry()
            registry.register(sink)
            registry.bind_loop(asyncio.get_running_loop())
            await asyncio.to_thread(registry.dispatch, _event())
            await asyncio.sleep(0)
            await registry.drain()

        asyncio.run(run())
        assert delivered == ["cta_click"]

    def test_closed_bound_loop_drops_delivery(self, caplog):
        async def sink(event):
            raise AssertionError("must not run")

        loop = asyncio.new_event_loop()
        loop.close()
        registry = DestinationRegistry()
        registry.register(sink)
        registry.bind_loop(loop)
        registry.dispatch(_event())
        assert registry.pending == 0
        assert "dropping async delivery" in caplog.text

    def test_sync_sink_exception_isolated(self):
        seen = []
        registry = DestinationRegistry()
        registry.register(lambda e: 1 / 0)
        registry.register(seen.append)
        registry.dispatch(_event())
        assert len(seen) == 1
        assert len(registry) == 2


class TestDestinationStatus:
    def test_unconfigured_is_disabled(self, consent):
        consent.accept_all()
        dest = MeasurementProtocolDestination(consent, "", "")
        assert dest.status is DestinationStatus.disabled
        assert dest(_event()) is None

    def test_pending_until_consent(self, consent):
        dest = MeasurementProtocolDestination(consent, "G-TEST", "secret")
        assert dest.status is DestinationStatus.pending
        assert dest(_event()) is None

        consent.accept_all()
        registry = DestinationRegistry()
        registry.register(dest)
        registry.refresh()
        assert dest.status is DestinationStatus.ready

    def test_withdrawal_moves_back_to_pending(self, consent):
        consent.accept_all()
        dest = TelemetryDestination(consent, "https://telemetry.test/track", "ikey")
        assert dest.status is DestinationStatus.ready
        consent.withdraw_consent()
        assert dest.refresh_status() is DestinationStatus.pending


class TestMeasurementProtocol:
    def test_body_shape(self):
        body = build_measurement_protocol_body("anon-1", "Lead Submitted", {"value": 1})
        assert body == {
            "client_id": "anon-1",
            "events": [{"name": "lead_submitted", "params": {"value": 1}}],
        }

    def test_missing_client_id(self):
        assert build_measurement_protocol_body("", "x", {})["client_id"] == "unknown"

    def test_sends_when_ready(self, consent):
        consent.accept_all()
        requests: list[httpx.Request] = []

        async def run():
            async with _client(requests) as client:
                dest = MeasurementProtocolDestination(consent, "G-TEST", "secret", http_client=client)
                await dest(_event())

        asyncio.run(run())
        assert len(requests) == 1
        assert requests[0].url.params["measurement_id"] == "G-TEST"
        body = json.loads(requests[0].content)
        assert body["client_id"] == "anon-1"
        assert body["events"][0]["name"] == "cta_click"
        assert body["events"][0]["params"]["event_id"] == "evt-1"


class TestTelemetry:
    def test_page_view_envelope(self, consent):
        dest = TelemetryDestination(consent, "https://telemetry.test/track", "ikey")
        envelope = dest.envelope(
            _event(type=EventType.page_view, event_name=None, properties={
                "page_name": "home",
                "page_url": "https://x",
                "session_id": "s-1",
                "anonymous_id": "anon-1",
                "referrer": None,
            })
        )
        assert envelope["name"] == "PageView"
        assert envelope["data"]["baseData"]["name"] == "home"
        assert envelope["tags"]["ai.session.id"] == "s-1"
        assert "referrer" not in envelope["data"]["baseData"]["properties"]


class TestCollectorDestination:
    def test_only_conversions_with_id(self, consent):
        consent.accept_all()
        dest = CollectorDestination(consent, "https://collector.test/events/collect")
        assert dest(_event()) is None
        assert dest(_event(type=EventType.conversion, event_id=None)) is None

    def test_posts_collector_payload(self, consent):
        consent.accept_all()
        requests: list[httpx.Request] = []

        async def run():
            async with _client(requests, status_code=200) as client:
                dest = CollectorDestination(consent, "https://collector.test/events/collect", http_client=client)
                await dest(_event(type=EventType.conversion, event_name="lead_submitted"))

        asyncio.run(run())
        payload = json.loads(requests[0].content)
        assert payload["event_type"] == "conversion"
        assert payload["event_id"] == "evt-1"
        assert payload["event_name"] == "lead_submitted"
        assert payload["timestamp"]

    def test_rate_limited_response_is_not_raised(self, consent, caplog):
        consent.accept_all()

        async def run():
            async with _client([], status_code=429) as client:
                dest = CollectorDestination(consent, "https://collector.test/events/collect", http_client=client)
                await dest(_event(type=EventType.conversion))

        asyncio.run(run())
        assert "rate limited" in caplog.text
