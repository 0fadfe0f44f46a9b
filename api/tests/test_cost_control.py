"""Tests for cost control: volume caps, window roll-over, base sampling, reporting."""

import json

import pytest

from pulse.analytics.cost_control import COST_METRICS_KEY, CostControl, CostControlConfig
from pulse.analytics.storage import MemoryStorage
from pulse.analytics.tracker import Tracker
from pulse.analytics.types import AnalyticsConfig

from conftest import START, BrokenStorage, FakeClock, FixedRandom


def _send(cost: CostControl, n: int) -> list[bool]:
    results = []
    for _ in range(n):
        decision = cost.should_allow_event()
        if decision.allowed:
            cost.record_event_sent()
        results.append(decision.allowed)
    return results


class TestCaps:
    def test_daily_cap(self, consent, clock):
        consent.accept_all()
        # usage past 50% lowers the sampling rate; 0.0 always samples in
        cost = CostControl(consent, rng=FixedRandom(0.0), clock=clock)
        cost.init_cost_controls(events_per_day=3, events_per_minute=100)
        assert _send(cost, 5) == [True, True, True, False, False]
        assert cost.should_allow_event().reason == "daily_limit"

    def test_daily_counter_rolls_over(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.0), clock=clock)
        cost.init_cost_controls(events_per_day=2, events_per_minute=100)
        _send(cost, 2)
        assert not cost.should_allow_event().allowed
        clock.advance(days=1)
        cost.reset_session_metrics()
        assert cost.should_allow_event().allowed

    def test_minute_cap_resets(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_minute=2)
        assert _send(cost, 3) == [True, True, False]
        assert cost.should_allow_event().reason == "rate_limited"
        clock.advance(seconds=60)
        assert cost.should_allow_event().allowed

    def test_session_cap(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_session=2, events_per_minute=100)
        _send(cost, 2)
        assert cost.should_allow_event().reason == "session_limit"
        cost.reset_session_metrics()
        assert cost.should_allow_event().allowed

    def test_budget_exceeded(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_minute=100, cost_per_1000_events=1000.0, monthly_budget=2.0)
        _send(cost, 2)
        assert cost.should_allow_event().reason == "budget_exceeded"

    def test_month_rolls_over(self, consent):
        clock = FakeClock(START.replace(day=31, month=3, hour=23, minute=59))
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_month=1, events_per_minute=100)
        _send(cost, 1)
        assert cost.should_allow_event().reason == "monthly_limit"
        clock.advance(minutes=2)
        assert cost.should_allow_event().allowed


class TestSampling:
    def test_base_sampling_drops_above_rate(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.6), clock=clock)
        cost.init_cost_controls(base_sampling_rate=0.5)
        decision = cost.should_allow_event()
        assert decision.allowed is False
        assert decision.reason == "sampled_out"

    def test_base_sampling_keeps_below_rate(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.4), clock=clock)
        cost.init_cost_controls(base_sampling_rate=0.5)
        assert cost.should_allow_event().allowed

    def test_no_consent(self, cost_control):
        cost_control.init_cost_controls()
        decision = cost_control.should_allow_event()
        assert decision.allowed is False
        assert decision.reason == "no_consent"

    def test_disabled_allows_everything(self, consent, clock):
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(enabled=False, events_per_day=0)
        assert cost.should_allow_event().allowed


def _at_daily_usage(consent, clock, sent: int, rng=None) -> CostControl:
    consent.accept_all()
    cost = CostControl(consent, rng=rng or FixedRandom(0.0), clock=clock)
    cost.init_cost_controls(events_per_day=100, events_per_minute=1000)
    for _ in range(sent):
        cost.record_event_sent()
    return cost


class TestPriorities:
    def test_critical_events_ignore_caps(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.99), clock=clock)
        cost.init_cost_controls(events_per_day=1, events_per_minute=100)
        _send(cost, 1)
        assert cost.should_allow_event("click").reason == "daily_limit"
        assert cost.should_allow_event("track").reason == "daily_limit"
        for event_type in ("page_view", "error", "conversion"):
            assert cost.should_allow_event(event_type).allowed, event_type

    def test_critical_events_ignore_budget(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_minute=100, cost_per_1000_events=1000.0, monthly_budget=1.0)
        _send(cost, 1)
        assert cost.should_allow_event().reason == "budget_exceeded"
        assert cost.should_allow_event("conversion").allowed

    def test_custom_priorities(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_day=1, events_per_minute=100, event_priorities={"signup": 9})
        _send(cost, 1)
        assert cost.should_allow_event("signup").allowed
        assert cost.should_allow_event("conversion").reason == "daily_limit"

    def test_unlisted_events_are_ordinary(self, cost_control):
        cost_control.init_cost_controls()
        assert cost_control.priority("conversion") == 10
        assert cost_control.priority("newsletter_opened") < cost_control.priority("form_submit")


class TestAdaptiveSampling:
    def test_base_rate_below_half_usage(self, consent, clock):
        cost = _at_daily_usage(consent, clock, 40)
        assert cost.sampling_rate() == 1.0

    def test_rate_ramps_between_half_and_threshold(self, consent, clock):
        cost = _at_daily_usage(consent, clock, 65)
        assert cost.sampling_rate() == pytest.approx(0.55)

    def test_aggressive_rate_at_threshold(self, consent, clock):
        cost = _at_daily_usage(consent, clock, 80)
        assert cost.sampling_rate() == pytest.approx(0.1)

    def test_low_priority_sampled_out_on_ramp(self, consent, clock):
        cost = _at_daily_usage(consent, clock, 65, rng=FixedRandom(0.6))
        decision = cost.should_allow_event("click")
        assert decision.allowed is False
        assert decision.reason == "sampled_out"
        assert decision.sampling_rate == pytest.approx(0.55)
        status = cost.throttling_status()
        assert status["current_sampling_rate"] == pytest.approx(0.55)
        assert status["is_throttling"] is True

    def test_high_priority_never_sampled(self, consent, clock):
        cost = _at_daily_usage(consent, clock, 80, rng=FixedRandom(0.99))
        assert cost.should_allow_event("form_submit").allowed
        assert cost.should_allow_event("experiment_assigned").allowed
        assert cost.should_allow_event("scroll").reason == "sampled_out"

    def test_ramp_never_exceeds_base_rate(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(base_sampling_rate=0.05, events_per_day=10, events_per_minute=100)
        for _ in range(9):
            cost.record_event_sent()
        assert cost.sampling_rate() == pytest.approx(0.05)


class TestPersistence:
    def test_saved_every_ten_events(self, consent, clock):
        consent.accept_all()
        storage = MemoryStorage()
        cost = CostControl(consent, storage=storage, clock=clock)
        cost.init_cost_controls(events_per_minute=100)
        _send(cost, 9)
        assert storage.get(COST_METRICS_KEY) is None
        _send(cost, 1)
        assert json.loads(storage.get(COST_METRICS_KEY))["events_today"] == 10

    def test_reloaded_by_new_instance(self, consent, clock):
        consent.accept_all()
        storage = MemoryStorage()
        first = CostControl(consent, storage=storage, clock=clock)
        first.init_cost_controls(events_per_minute=100)
        _send(first, 10)

        second = CostControl(consent, storage=storage, clock=clock)
        second.init_cost_controls(events_per_minute=100)
        assert second.metrics.events_today == 10
        assert second.metrics.events_this_month == 10

    def test_stale_day_resets_on_load(self, consent, clock):
        consent.accept_all()
        storage = MemoryStorage()
        first = CostControl(consent, storage=storage, clock=clock)
        first.init_cost_controls(events_per_minute=100)
        _send(first, 10)

        clock.advance(days=1)
        second = CostControl(consent, storage=storage, clock=clock)
        second.init_cost_controls()
        assert second.metrics.events_today == 0
        assert second.metrics.events_this_month == 10

    def test_malformed_record_starts_fresh(self, consent, clock):
        storage = MemoryStorage({COST_METRICS_KEY: "{not json"})
        cost = CostControl(consent, storage=storage, clock=clock)
        cost.init_cost_controls()
        assert cost.metrics.events_today == 0

    def test_broken_storage_never_raises(self, consent, clock, caplog):
        consent.accept_all()
        cost = CostControl(consent, storage=BrokenStorage(), clock=clock)
        cost.init_cost_controls(events_per_minute=100)
        assert _send(cost, 10) == [True] * 10
        assert "Failed to save cost metrics" in caplog.text


class TestTrackerIntegration:
    def test_cap_applies_on_top_of_tracker_sampling(self, identity, consent, clock, sink):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(CostControlConfig(events_per_day=2))
        t = Tracker(identity, consent, cost_control=cost, rng=FixedRandom(0.0), clock=clock)
        t.register_destination(sink)
        t.init_analytics(AnalyticsConfig())
        assert [t.track(f"e{i}") for i in range(3)] == [True, True, False]
        assert len(sink.events) == 2


    def test_conversions_and_page_views_pass_exhausted_cap(self, identity, consent, clock, sink):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.99), clock=clock)
        cost.init_cost_controls(events_per_day=1)
        t = Tracker(identity, consent, cost_control=cost, clock=clock)
        t.register_destination(sink)
        t.init_analytics(AnalyticsConfig())
        assert t.track("cta") is True
        assert t.track("cta") is False
        assert t.page("home") is True
        assert t.conversion("purchase", "order-1") is True
        assert cost.metrics.events_today == 3

    def test_track_priority_uses_event_name(self, identity, consent, clock, sink):
        consent.accept_all()
        cost = CostControl(consent, rng=FixedRandom(0.99), clock=clock)
        cost.init_cost_controls(events_per_day=100, events_per_minute=1000)
        for _ in range(80):
            cost.record_event_sent()
        t = Tracker(identity, consent, cost_control=cost, clock=clock)
        t.register_destination(sink)
        t.init_analytics(AnalyticsConfig())
        assert t.track("Form Submit") is True
        assert t.track("click") is False


class TestReporting:
    def test_costs_and_status(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_minute=100, cost_per_1000_events=10.0, monthly_budget=100.0)
        _send(cost, 10)
        costs = cost.estimated_costs()
        assert costs["today_cost"] == pytest.approx(0.1)
        assert costs["budget_remaining"] == pytest.approx(99.9)
        status = cost.throttling_status()
        assert status["limits"]["minute"]["current"] == 10
        assert status["is_throttling"] is False
        assert cost.usage_metrics()["events_today"] == 10

    def test_update_config(self, cost_control):
        cost_control.init_cost_controls()
        cost_control.update_config(events_per_day=5)
        assert cost_control.config.events_per_day == 5

    def test_projected_month_cost(self, consent, clock):
        consent.accept_all()
        cost = CostControl(consent, clock=clock)
        cost.init_cost_controls(events_per_minute=100, cost_per_1000_events=10.0)
        _send(cost, 10)
        # 10 March: 0.10 so far, projected over 31 days
        assert cost.estimated_costs()["projected_month_cost"] == pytest.approx(0.31)
