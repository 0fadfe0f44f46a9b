"""Composition root for the client pipeline.

One ``AnalyticsContext`` owns every stateful component, so each test (or
each embedding application) gets fresh state by building a new context
instead of resetting module globals.
"""

from __future__ import annotations

import asyncio
import logging
import random

import httpx

from pulse.analytics.consent import ConsentGate
from pulse.analytics.cost_control import CostControl, CostControlConfig
from pulse.analytics.destinations import (
    CollectorDestination,
    Destination,
    MeasurementProtocolDestination,
    TelemetryDestination,
)
from pulse.analytics.events import PageContext
from pulse.analytics.identity import IdentityStore
from pulse.analytics.storage import KeyValueStorage, MemoryStorage
from pulse.analytics.tracker import Tracker
from pulse.analytics.types import AnalyticsConfig, Clock, ConsentState, IdentityConfig, utc_now
from pulse.core.config import Settings
from pulse.experiments.flags import FeatureFlags, FeatureFlagsConfig

logger = logging.getLogger(__name__)


class AnalyticsContext:
    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        analytics_config: AnalyticsConfig | None = None,
        identity_config: IdentityConfig | None = None,
        cost_config: CostControlConfig | None = None,
        flags_config: FeatureFlagsConfig | None = None,
        page_context: PageContext | None = None,
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.analytics_config = analytics_config or AnalyticsConfig()
        self.cost_config = cost_config or CostControlConfig()
        self.flags_config = flags_config or FeatureFlagsConfig()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)

        rng = rng or random.Random()
        self.identity = IdentityStore(self.storage, identity_config, clock=clock)
        self.consent = ConsentGate(self.storage, clock=clock)
        self.cost_control = CostControl(self.consent, storage=self.storage, rng=rng, clock=clock)
        self.tracker = Tracker(
            self.identity,
            self.consent,
            cost_control=self.cost_control,
            page_context=page_context,
            rng=rng,
            clock=clock,
        )
        self.flags = FeatureFlags(self.tracker, self.identity, http_client=self.http_client, clock=clock)

        self.consent.on_change(self._consent_changed)
        self.consent.on_withdraw(self._consent_withdrawn)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: KeyValueStorage | None = None,
        **kwargs,
    ) -> "AnalyticsContext":
        """Build a context from service settings and register configured destinations."""
        context = cls(
            storage,
            analytics_config=AnalyticsConfig(
                enabled=settings.ANALYTICS_ENABLED,
                debug_mode=settings.ANALYTICS_DEBUG,
                sampling_rate=settings.ANALYTICS_SAMPLING_RATE,
                environment=settings.APP_ENV,
                app_version=settings.APP_VERSION,
            ),
            identity_config=IdentityConfig(
                anonymous_id_expiry_days=settings.ANONYMOUS_ID_EXPIRY_DAYS,
                session_timeout_minutes=settings.SESSION_TIMEOUT_MINUTES,
                daily_session_reset=settings.DAILY_SESSION_RESET,
            ),
            cost_config=CostControlConfig(
                events_per_day=settings.COST_EVENTS_PER_DAY,
                base_sampling_rate=settings.COST_BASE_SAMPLING_RATE,
                debug=settings.ANALYTICS_DEBUG,
            ),
            flags_config=FeatureFlagsConfig(
                endpoint=settings.FEATURE_FLAGS_ENDPOINT or None,
                refresh_interval=settings.FEATURE_FLAGS_REFRESH_SECONDS,
                debug=settings.ANALYTICS_DEBUG,
            ),
            **kwargs,
        )

        sinks: list[Destination] = [
            MeasurementProtocolDestination(
                context.consent,
                settings.GA4_MEASUREMENT_ID,
                settings.GA4_API_SECRET,
                http_client=context.http_client,
            ),
            TelemetryDestination(
                context.consent,
                settings.TELEMETRY_ENDPOINT,
                settings.TELEMETRY_INSTRUMENTATION_KEY,
                http_client=context.http_client,
            ),
            CollectorDestination(context.consent, settings.EVENTS_ENDPOINT, http_client=context.http_client),
        ]
        for sink in sinks:
            if sink.configured():
                context.tracker.register_destination(sink)
            else:
                logger.debug("%s not configured, not registering", sink.name)
        return context

    def _consent_changed(self, state: ConsentState) -> None:
        self.tracker.destinations.refresh()

    def _consent_withdrawn(self, state: ConsentState) -> None:
        self.identity.clear_identity()
        self.tracker.handle_consent_withdrawn()
        self.cost_control.reset_session_metrics()

    async def start(self) -> None:
        """Initialize every component and bind destinations to the running loop."""
        self.tracker.destinations.bind_loop(asyncio.get_running_loop())
        self.cost_control.init_cost_controls(self.cost_config)
        self.tracker.init_analytics(self.analytics_config)
        await self.flags.init_feature_flags(self.flags_config)

    async def shutdown(self) -> None:
        await self.flags.stop()
        await self.tracker.destinations.drain()
        self.tracker.destinations.bind_loop(None)
        self.cost_control.save_metrics()
        if self._owns_client:
            await self.http_client.aclose()
