"""Feature flags and experiment tracking.

Flags are seeded from compiled-in defaults merged with caller defaults, then
optionally replaced by a remote configuration source::

    GET {endpoint}/kv?key=feature.*
    {"items": [{"key": "feature.<name>", "value": "{\\"enabled\\": true, ...}"}]}

Each successful fetch replaces the whole flag map; a failed fetch is logged
and leaves the current flags alone.  Polling runs as a cancellable asyncio
task started by ``init_feature_flags`` and stopped by ``stop``.  Overlapping
fetches are not prevented: whichever response lands last wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from pulse.analytics.identity import IdentityStore
from pulse.analytics.tracker import Tracker
from pulse.analytics.types import Clock, ExperimentAssignment, FeatureFlag, utc_now
from pulse.experiments.assignment import pick_variant

logger = logging.getLogger(__name__)

DEFAULT_FLAGS: dict[str, bool] = {
    "analytics.enhanced_tracking": True,
    "analytics.session_replay": False,
    "marketing.personalization": False,
    "ui.new_contact_form": False,
    "ui.video_autoplay": True,
}

FLAG_KEY_PREFIX = "feature."


class FeatureFlagsConfig(BaseModel):
    endpoint: str | None = None
    refresh_interval: float = 0  # seconds; 0 disables polling
    defaults: dict[str, bool] = Field(default_factory=dict)
    debug: bool = False


def parse_flag_items(data: dict[str, Any]) -> dict[str, FeatureFlag]:
    """Turn a remote configuration response into a flag map."""
    flags: dict[str, FeatureFlag] = {}
    for item in data.get("items", []):
        key = item["key"]
        name = key[len(FLAG_KEY_PREFIX):] if key.startswith(FLAG_KEY_PREFIX) else key
        value = item.get("value") or "{}"
        value = json.loads(value) if isinstance(value, str) else value
        flags[name] = FeatureFlag(
            name=name,
            enabled=bool(value.get("enabled", False)),
            variant=value.get("variant"),
            targeting_rules=value.get("targeting"),
        )
    return flags


class FeatureFlags:
    def __init__(
        self,
        tracker: Tracker,
        identity: IdentityStore,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.tracker = tracker
        self.identity = identity
        self.config = FeatureFlagsConfig()
        self._client = http_client
        self._clock = clock
        self._flags: dict[str, FeatureFlag] = {}
        self._assignments: dict[str, ExperimentAssignment] = {}
        self._refresh_task: asyncio.Task | None = None
        self.initialized = False
        self.last_fetched: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init_feature_flags(self, config: FeatureFlagsConfig | None = None) -> None:
        self.config = config or FeatureFlagsConfig()
        defaults = {**DEFAULT_FLAGS, **self.config.defaults}
        self._flags = {name: FeatureFlag(name=name, enabled=enabled) for name, enabled in defaults.items()}
        self.initialized = True

        if self.config.endpoint:
            await self.refresh_flags()
            if self.config.refresh_interval > 0:
                self.start_refresh()

        if self.config.debug:
            logger.info("Feature flags initialized: %s", self.get_all_flags())

    async def refresh_flags(self) -> bool:
        """Fetch flags once. Returns False (and keeps current flags) on failure."""
        if not self.config.endpoint:
            return False
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.get(
                f"{self.config.endpoint.rstrip('/')}/kv",
                params={"key": f"{FLAG_KEY_PREFIX}*"},
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            flags = parse_flag_items(response.json())
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.error("Failed to fetch feature flags: %s", exc)
            return False
        finally:
            if self._client is None:
                await client.aclose()

        self._flags = flags
        self.last_fetched = self._clock()
        if self.config.debug:
            logger.info("Fetched feature flags: %s", self.get_all_flags())
        return True

    def start_refresh(self) -> asyncio.Task:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._poll())
        return self._refresh_task

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            await self.refresh_flags()

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # ------------------------------------------------------------------
    # Flag evaluation
    # ------------------------------------------------------------------

    def is_feature_enabled(self, name: str, default: bool = False) -> bool:
        flag = self._flags.get(name)
        return flag.enabled if flag is not None else default

    def get_feature_flag(self, name: str) -> FeatureFlag | None:
        flag = self._flags.get(name)
        return flag.model_copy() if flag is not None else None

    def get_all_flags(self) -> dict[str, bool]:
        return {name: flag.enabled for name, flag in self._flags.items()}

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def assign_experiment_variant(
        self,
        experiment_id: str,
        variants: list[str],
        weights: list[float] | None = None,
    ) -> str:
        """Sticky variant for the current identity.

        The first call for an experiment emits ``experiment_assigned``; later
        calls return the cached variant.
        """
        if not variants:
            raise ValueError("At least one variant is required")

        existing = self._assignments.get(experiment_id)
        if existing is not None:
            return existing.variant

        variant = pick_variant(self.identity.get_anonymous_id(), experiment_id, variants, weights)
        self.track_experiment_assigned(experiment_id, variant)
        return variant

    def track_experiment_assigned(
        self,
        experiment_id: str,
        variant: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        session_id = self.identity.get_session_id()
        existing = self._assignments.get(experiment_id)
        if existing is not None and existing.session_id == session_id:
            return False

        self._assignments[experiment_id] = ExperimentAssignment(
            experiment_id=experiment_id,
            variant=variant,
            assigned_at=self._clock(),
            session_id=session_id,
        )
        self.tracker.track(
            "experiment_assigned",
            {
                "experiment_id": experiment_id,
                "experiment_variant": variant,
                **(properties or {}),
            },
        )
        if self.config.debug:
            logger.info("Experiment assigned: %s -> %s", experiment_id, variant)
        return True

    def track_experiment_exposed(
        self,
        experiment_id: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Record that the visitor actually saw the experiment."""
        assignment = self._assignments.get(experiment_id)
        if assignment is None:
            logger.warning("No assignment found for experiment: %s", experiment_id)
            return False

        elapsed = self._clock() - assignment.assigned_at
        return self.tracker.track(
            "experiment_exposed",
            {
                "experiment_id": experiment_id,
                "experiment_variant": assignment.variant,
                "time_since_assignment": int(elapsed.total_seconds() * 1000),
                **(properties or {}),
            },
        )

    def get_experiment_assignment(self, experiment_id: str) -> ExperimentAssignment | None:
        assignment = self._assignments.get(experiment_id)
        return assignment.model_copy() if assignment is not None else None
