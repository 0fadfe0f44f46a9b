"""Event tracker: the one place tracking behaviour is decided.

Every ``track`` / ``page`` / ``conversion`` call runs the same pipeline:

1. queue the call if ``init_analytics`` has not run yet
2. consent gate (``analytics``, plus the caller's category if stricter)
3. fire-once check
4. tracker sampling (``sampling_rate``; forced to 1.0 in debug mode)
5. cost control, when attached (priority by event name for ``track``,
   by event type for page views and conversions)
6. build the canonical event with the standard properties
7. dispatch to every registered destination (fire-and-forget)

Rejections are policy, not errors: the call returns ``False`` and logs at
DEBUG.  Nothing here raises to the caller.
"""

from __future__ import annotations

import logging
import random
import uuid
from typing import Any
from urllib.parse import parse_qs, urlparse

from pulse.analytics.consent import ConsentGate
from pulse.analytics.cost_control import CostControl
from pulse.analytics.destinations import DestinationRegistry, Sink
from pulse.analytics.events import (
    CanonicalEvent,
    EventType,
    PageContext,
    device_class,
    sanitize_event_name,
)
from pulse.analytics.identity import IdentityStore
from pulse.analytics.types import AnalyticsConfig, Clock, ConsentCategory, utc_now

logger = logging.getLogger(__name__)

DEBUG_QUERY_PARAM = "debug_analytics"


class Tracker:
    def __init__(
        self,
        identity: IdentityStore,
        consent: ConsentGate,
        cost_control: CostControl | None = None,
        page_context: PageContext | None = None,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.identity = identity
        self.consent = consent
        self.cost_control = cost_control
        self.page_context = page_context or PageContext()
        self.destinations = DestinationRegistry()
        self._rng = rng or random.Random()
        self._clock = clock
        self._config = AnalyticsConfig()
        self._initialized = False
        self._previous_page: str | None = None
        self._fired: set[str] = set()
        self._queue: list[tuple[str, tuple, dict]] = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> AnalyticsConfig:
        return self._config.model_copy()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def queued(self) -> int:
        return len(self._queue)

    def init_analytics(self, config: AnalyticsConfig | None = None) -> None:
        """Apply ``config`` and replay calls queued before initialization, in order."""
        self._config = (config or AnalyticsConfig()).model_copy()
        if self._debug_requested_by_url():
            self._config.debug_mode = True
        if self._config.debug_mode:
            self._config.sampling_rate = 1.0

        self._initialized = True

        queue, self._queue = self._queue, []
        for method, args, kwargs in queue:
            getattr(self, method)(*args, **kwargs)

        self._debug("Initialized with config: %s", self._config.model_dump())

    def _debug_requested_by_url(self) -> bool:
        query = urlparse(self.page_context.url).query
        return parse_qs(query).get(DEBUG_QUERY_PARAM, [""])[0] == "1"

    def set_page_context(self, page_context: PageContext) -> None:
        self.page_context = page_context

    def register_destination(self, sink: Sink) -> None:
        self.destinations.register(sink)

    def _debug(self, msg: str, *args: Any) -> None:
        if self._config.debug_mode:
            logger.info(msg, *args)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _standard_properties(self) -> dict[str, Any]:
        identity = self.identity.get_identity()
        ctx = self.page_context
        return {
            "anonymous_id": identity.anonymous_id,
            "session_id": identity.session_id,
            "page_url": ctx.url,
            "page_path": ctx.path,
            "page_title": ctx.title,
            "referrer": ctx.referrer,
            "device_class": device_class(ctx.viewport_width),
            "viewport_width": ctx.viewport_width,
            "viewport_height": ctx.viewport_height,
            "locale": ctx.locale,
            "env": self._config.environment,
            "app_version": self._config.app_version,
            "consent_state_version": self.consent.consent_version,
            "timestamp": self._clock().isoformat(),
        }

    def _queue_call(self, method: str, *args: Any, **kwargs: Any) -> bool:
        self._queue.append((method, args, kwargs))
        return False

    def _admit(self, label: str, category: ConsentCategory | str) -> bool:
        if not self._config.enabled:
            logger.debug("Analytics disabled, dropping %s", label)
            return False
        # analytics is a blanket gate; a stricter category is checked on top
        required = [ConsentCategory.analytics.value]
        name = getattr(category, "value", category)
        if name not in required:
            required.append(name)
        for needed in required:
            if not self.consent.can_track(needed):
                logger.debug("Blocked (no %s consent): %s", needed, label)
                return False
        return True

    def _sampled_in(self, label: str, event_type: str) -> bool:
        rate = self._config.sampling_rate
        if rate < 1.0 and self._rng.random() >= rate:
            logger.debug("Sampled out: %s", label)
            return False
        return self._cost_allows(label, event_type)

    def _cost_allows(self, label: str, event_type: str) -> bool:
        # event_type keys the cost-control priority map
        if self.cost_control is not None:
            decision = self.cost_control.should_allow_event(event_type)
            if not decision.allowed:
                logger.debug("Dropped by cost control (%s): %s", decision.reason, label)
                return False
        return True

    def _emit(self, event: CanonicalEvent) -> None:
        self.destinations.dispatch(event)
        if self.cost_control is not None:
            self.cost_control.record_event_sent()

    # ------------------------------------------------------------------
    # Tracking API
    # ------------------------------------------------------------------

    def track(
        self,
        event_name: str,
        properties: dict[str, Any] | None = None,
        *,
        category: ConsentCategory | str = ConsentCategory.analytics,
        fire_once: bool = False,
        fire_once_key: str | None = None,
    ) -> bool:
        """Track a custom event. Returns True when it was dispatched."""
        if not self._initialized:
            return self._queue_call(
                "track",
                event_name,
                properties,
                category=category,
                fire_once=fire_once,
                fire_once_key=fire_once_key,
            )
        try:
            if not self._admit(event_name, category):
                return False

            key = fire_once_key or event_name
            if fire_once and key in self._fired:
                logger.debug("Skipped (already fired): %s", key)
                return False

            if not self._sampled_in(event_name, sanitize_event_name(event_name)):
                return False

            event = CanonicalEvent(
                type=EventType.track,
                event_name=sanitize_event_name(event_name),
                event_id=str(uuid.uuid4()),
                properties={**self._standard_properties(), **(properties or {})},
            )
            if fire_once:
                self._fired.add(key)

            self._debug("Track: %s %s", event.event_name, event.properties)
            self._emit(event)
            return True
        except Exception:
            logger.exception("track(%r) failed", event_name)
            return False

    def page(self, page_name: str, properties: dict[str, Any] | None = None) -> bool:
        """Track a page view, stamping ``previous_page`` from the last one."""
        if not self._initialized:
            return self._queue_call("page", page_name, properties)
        try:
            if not self._admit(page_name, ConsentCategory.analytics):
                return False
            if not self._sampled_in(page_name, EventType.page_view.value):
                return False

            event = CanonicalEvent(
                type=EventType.page_view,
                properties={
                    **self._standard_properties(),
                    "page_name": page_name,
                    "previous_page": self._previous_page,
                    **(properties or {}),
                },
            )
            self._previous_page = page_name

            self._debug("Page view: %s %s", page_name, event.properties)
            self._emit(event)
            return True
        except Exception:
            logger.exception("page(%r) failed", page_name)
            return False

    def conversion(
        self,
        event_name: str,
        event_id: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Track a business conversion.

        ``event_id`` is the caller's idempotency key; the same
        ``(event_name, event_id)`` pair is dispatched at most once.
        Conversions skip tracker sampling; cost control passes them by
        priority, so neither sampling nor volume caps drop them.
        """
        if not self._initialized:
            return self._queue_call("conversion", event_name, event_id, properties)
        try:
            if not event_id:
                logger.warning("Conversion %r has no event_id, dropping", event_name)
                return False
            if not self._admit(event_name, ConsentCategory.analytics):
                return False

            key = f"conversion:{event_name}:{event_id}"
            if key in self._fired:
                logger.debug("Skipped duplicate conversion: %s %s", event_name, event_id)
                return False
            if not self._cost_allows(event_name, EventType.conversion.value):
                return False

            name = sanitize_event_name(event_name)
            event = CanonicalEvent(
                type=EventType.conversion,
                event_name=name,
                event_id=event_id,
                properties={
                    **self._standard_properties(),
                    "conversion_type": name,
                    **(properties or {}),
                },
            )
            self._fired.add(key)

            self._debug("Conversion: %s %s %s", name, event_id, event.properties)
            self._emit(event)
            return True
        except Exception:
            logger.exception("conversion(%r) failed", event_name)
            return False

    # ------------------------------------------------------------------
    # Fire once
    # ------------------------------------------------------------------

    def track_once(self, event_name: str, properties: dict[str, Any] | None = None) -> bool:
        return self.track(event_name, properties, fire_once=True)

    def track_once_with_key(
        self,
        event_name: str,
        key: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Fire once per ``(event_name, key)``, e.g. once per video id."""
        return self.track(event_name, properties, fire_once=True, fire_once_key=f"{event_name}:{key}")

    def has_fired(self, key: str) -> bool:
        return key in self._fired

    def reset_fired_events(self) -> None:
        self._fired.clear()

    def handle_consent_withdrawn(self, *_: Any) -> None:
        self._fired.clear()
        self._debug("Consent withdrawn, fire-once state cleared")
