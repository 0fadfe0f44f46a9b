"""Cost control and throttling for outbound analytics volume.

Applied on top of the tracker's own sampling to bound third-party ingestion
cost under traffic spikes:

- hard caps per minute, per session, per UTC day and per month, plus a
  monthly budget derived from a per-1000-events price
- a base sampling rate that ramps down towards ``aggressive_sampling_rate``
  once daily, monthly or budget usage passes 50%
- event priorities: critical events (``conversion``, ``error``,
  ``page_view``) ignore the caps, high-priority events are never sampled
- rough cost estimation from event counts

Counters are per process.  When a storage backend is given they are saved
every few events and reloaded by ``init_cost_controls`` (day and month
counters start over when the stored ones are stale); nothing is coordinated
across instances.
"""

from __future__ import annotations

import calendar
import logging
import random
from dataclasses import dataclass
from datetime import timezone

from pydantic import AwareDatetime, BaseModel, Field, ValidationError

from pulse.analytics.consent import ConsentGate
from pulse.analytics.storage import KeyValueStorage, StorageError
from pulse.analytics.types import Clock, ConsentCategory, day_key, utc_now

logger = logging.getLogger(__name__)

COST_METRICS_KEY = "pulse_cost_metrics"

# higher = less likely to be dropped
DEFAULT_EVENT_PRIORITIES = {
    "conversion": 10,
    "error": 9,
    "page_view": 8,
    "experiment_assigned": 7,
    "form_submit": 6,
    "click": 3,
    "scroll": 1,
    "mouse_move": 0,
}
# custom events not listed above are ordinary traffic: capped and sampled
DEFAULT_PRIORITY = 4
HIGH_PRIORITY_THRESHOLD = 5
CRITICAL_PRIORITY_THRESHOLD = 8

SAVE_EVERY = 10
RAMP_START = 0.5


class CostControlConfig(BaseModel):
    enabled: bool = True
    events_per_minute: int = 60
    events_per_session: int = 1000
    events_per_day: int = 100_000
    events_per_month: int = 2_000_000
    base_sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    aggressive_sampling_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    # share of the tightest limit at which the aggressive rate applies
    aggressive_sampling_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    event_priorities: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_EVENT_PRIORITIES))
    cost_per_1000_events: float = 0.01
    monthly_budget: float = 100.0
    debug: bool = False


class UsageMetrics(BaseModel):
    events_this_minute: int = 0
    events_this_session: int = 0
    events_today: int = 0
    events_this_month: int = 0
    minute_started_at: AwareDatetime | None = None
    day_key: str = ""
    month_key: str = ""
    events_dropped: int = 0
    current_sampling_rate: float = 1.0


@dataclass
class ThrottleDecision:
    allowed: bool
    # allowed | no_consent | rate_limited | session_limit | daily_limit
    # | monthly_limit | budget_exceeded | sampled_out
    reason: str
    sampling_rate: float


def _usage(current: float, limit: float) -> float:
    return current / limit if limit > 0 else 1.0


class CostControl:
    def __init__(
        self,
        consent: ConsentGate | None = None,
        storage: KeyValueStorage | None = None,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.consent = consent
        self.storage = storage
        self._rng = rng or random.Random()
        self._clock = clock
        self.config = CostControlConfig()
        self.metrics = self._fresh_metrics()

    def _fresh_metrics(self) -> UsageMetrics:
        now = self._clock()
        return UsageMetrics(
            minute_started_at=now,
            day_key=day_key(now),
            month_key=day_key(now)[:7],
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_metrics(self) -> UsageMetrics:
        if self.storage is None:
            return self._fresh_metrics()
        try:
            raw = self.storage.get(COST_METRICS_KEY)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to read cost metrics: %s", exc)
            return self._fresh_metrics()
        if not raw:
            return self._fresh_metrics()
        try:
            metrics = UsageMetrics.model_validate_json(raw)
        except ValidationError:
            logger.debug("Discarding malformed cost metrics record")
            return self._fresh_metrics()
        self.metrics = metrics
        self._roll_windows()
        return self.metrics

    def save_metrics(self) -> None:
        if self.storage is None:
            return
        try:
            self.storage.set(COST_METRICS_KEY, self.metrics.model_dump_json())
        except (StorageError, OSError) as exc:
            logger.warning("Failed to save cost metrics: %s", exc)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def init_cost_controls(self, config: CostControlConfig | None = None, **overrides) -> None:
        base = config or CostControlConfig()
        self.config = base.model_copy(update=overrides) if overrides else base
        self.metrics = self._load_metrics()
        if self.config.debug:
            logger.info("Cost controls initialized: %s", self.config.model_dump())
            logger.info("Current usage: %s", self.metrics.model_dump())

    def update_config(self, **changes) -> None:
        self.config = self.config.model_copy(update=changes)

    def reset_session_metrics(self) -> None:
        self.metrics.events_this_session = 0
        self.metrics.events_this_minute = 0
        self.metrics.minute_started_at = self._clock()

    def priority(self, event_type: str) -> int:
        return self.config.event_priorities.get(event_type, DEFAULT_PRIORITY)

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    def _roll_windows(self) -> None:
        now = self._clock()
        m = self.metrics
        if m.minute_started_at is None or (now - m.minute_started_at).total_seconds() >= 60:
            m.events_this_minute = 0
            m.minute_started_at = now
        today = day_key(now)
        if m.day_key != today:
            m.events_today = 0
            m.day_key = today
        if m.month_key != today[:7]:
            m.events_this_month = 0
            m.month_key = today[:7]

    def _estimated_month_cost(self) -> float:
        return (self.metrics.events_this_month / 1000) * self.config.cost_per_1000_events

    def sampling_rate(self) -> float:
        """Current sampling rate for low-priority events.

        Equal to ``base_sampling_rate`` below 50% usage of the daily, monthly
        or budget limit, then falls linearly to ``aggressive_sampling_rate``
        at ``aggressive_sampling_threshold``.  Never above the base rate.
        """
        cfg = self.config
        m = self.metrics
        usage = max(
            _usage(m.events_today, cfg.events_per_day),
            _usage(m.events_this_month, cfg.events_per_month),
            _usage(self._estimated_month_cost(), cfg.monthly_budget),
        )
        rate = cfg.base_sampling_rate
        if usage >= cfg.aggressive_sampling_threshold:
            rate = cfg.aggressive_sampling_rate
        elif usage >= RAMP_START:
            factor = (usage - RAMP_START) / (cfg.aggressive_sampling_threshold - RAMP_START)
            rate = cfg.base_sampling_rate - factor * (cfg.base_sampling_rate - cfg.aggressive_sampling_rate)
        return max(0.0, min(cfg.base_sampling_rate, rate))

    def _drop(self, reason: str, rate: float) -> ThrottleDecision:
        self.metrics.events_dropped += 1
        if self.config.debug:
            logger.info("Event dropped by cost control: %s", reason)
        return ThrottleDecision(allowed=False, reason=reason, sampling_rate=rate)

    def should_allow_event(self, event_type: str = "track") -> ThrottleDecision:
        """Decide whether one more ``event_type`` event may go out. Does not count it."""
        cfg = self.config
        if not cfg.enabled:
            return ThrottleDecision(allowed=True, reason="allowed", sampling_rate=1.0)

        if self.consent is not None and not self.consent.can_track(ConsentCategory.analytics):
            return ThrottleDecision(allowed=False, reason="no_consent", sampling_rate=0.0)

        self._roll_windows()
        m = self.metrics
        rate = self.sampling_rate()
        m.current_sampling_rate = rate
        priority = self.priority(event_type)

        if priority < CRITICAL_PRIORITY_THRESHOLD:
            caps = (
                ("rate_limited", m.events_this_minute, cfg.events_per_minute),
                ("session_limit", m.events_this_session, cfg.events_per_session),
                ("daily_limit", m.events_today, cfg.events_per_day),
                ("monthly_limit", m.events_this_month, cfg.events_per_month),
            )
            for reason, current, limit in caps:
                if current >= limit:
                    return self._drop(reason, rate)
            if self._estimated_month_cost() >= cfg.monthly_budget:
                return self._drop("budget_exceeded", rate)

        if priority < HIGH_PRIORITY_THRESHOLD and rate < 1.0 and self._rng.random() >= rate:
            return self._drop("sampled_out", rate)

        return ThrottleDecision(allowed=True, reason="allowed", sampling_rate=rate)

    def record_event_sent(self) -> None:
        self._roll_windows()
        m = self.metrics
        m.events_this_minute += 1
        m.events_this_session += 1
        m.events_today += 1
        m.events_this_month += 1
        if m.events_this_session % SAVE_EVERY == 0:
            self.save_metrics()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage_metrics(self) -> dict:
        return self.metrics.model_dump()

    def estimated_costs(self) -> dict[str, float]:
        cfg = self.config
        today_cost = (self.metrics.events_today / 1000) * cfg.cost_per_1000_events
        month_cost = self._estimated_month_cost()

        # linear projection from the UTC day of month
        now = self._clock().astimezone(timezone.utc)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        projected = month_cost / now.day * days_in_month

        return {
            "today_cost": today_cost,
            "month_cost": month_cost,
            "projected_month_cost": projected,
            "budget_remaining": max(0.0, cfg.monthly_budget - month_cost),
            "budget_utilization": month_cost / cfg.monthly_budget if cfg.monthly_budget else 0.0,
        }

    def throttling_status(self) -> dict:
        cfg = self.config
        m = self.metrics

        def _limit(current: int, limit: int) -> dict:
            return {"current": current, "limit": limit, "utilization": current / limit if limit else 0.0}

        return {
            "is_throttling": m.current_sampling_rate < 1.0 or m.events_dropped > 0,
            "current_sampling_rate": m.current_sampling_rate,
            "events_dropped": m.events_dropped,
            "limits": {
                "minute": _limit(m.events_this_minute, cfg.events_per_minute),
                "session": _limit(m.events_this_session, cfg.events_per_session),
                "day": _limit(m.events_today, cfg.events_per_day),
                "month": _limit(m.events_this_month, cfg.events_per_month),
            },
        }
