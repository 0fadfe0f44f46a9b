"""Consent gate.

``can_track`` is the single check every tracking path goes through.  The
state is default-deny for ``analytics`` and ``marketing`` until the visitor
makes an explicit choice; ``necessary`` is always granted and can never be
switched off.
"""

from __future__ import annotations

import logging
from typing import Callable

from pydantic import ValidationError

from pulse.analytics.storage import KeyValueStorage, StorageError
from pulse.analytics.types import (
    CONSENT_VERSION,
    Clock,
    ConsentCategory,
    ConsentState,
    utc_now,
)

logger = logging.getLogger(__name__)

CONSENT_KEY = "pulse_consent"

ConsentListener = Callable[[ConsentState], None]

_CATEGORIES = {c.value for c in ConsentCategory}


def _category_name(category: ConsentCategory | str) -> str:
    return category.value if isinstance(category, ConsentCategory) else str(category)


class ConsentGate:
    def __init__(self, storage: KeyValueStorage, clock: Clock = utc_now) -> None:
        self._storage = storage
        self._clock = clock
        self._change_listeners: list[ConsentListener] = []
        self._withdraw_listeners: list[ConsentListener] = []
        self.preferences_open = False
        self._state = self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> ConsentState:
        try:
            raw = self._storage.get(CONSENT_KEY)
        except (StorageError, OSError) as exc:
            logger.warning("Failed to read consent state: %s", exc)
            return ConsentState(timestamp=self._clock())
        if not raw:
            return ConsentState(timestamp=self._clock())
        try:
            state = ConsentState.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed consent state")
            return ConsentState(timestamp=self._clock())
        return self._normalize(state)

    @staticmethod
    def _normalize(state: ConsentState) -> ConsentState:
        choices = {
            "necessary": True,
            "analytics": bool(state.choices.get("analytics", False)),
            "marketing": bool(state.choices.get("marketing", False)),
        }
        return state.model_copy(update={"choices": choices})

    def _save(self, choices: dict[str, bool]) -> ConsentState:
        state = self._normalize(
            ConsentState(
                version=CONSENT_VERSION,
                timestamp=self._clock(),
                choices=choices,
                has_interacted=True,
                banner_shown=True,
            )
        )
        self._state = state
        try:
            self._storage.set(CONSENT_KEY, state.model_dump_json())
        except (StorageError, OSError) as exc:
            logger.error("Failed to persist consent state, keeping it in memory: %s", exc)
        self._notify(self._change_listeners, state)
        return state

    def _notify(self, listeners: list[ConsentListener], state: ConsentState) -> None:
        for listener in list(listeners):
            try:
                listener(state.model_copy())
            except Exception:
                logger.exception("Consent listener failed")

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConsentState:
        return self._state.model_copy(deep=True)

    @property
    def consent_version(self) -> str:
        return self._state.version

    def can_track(self, category: ConsentCategory | str) -> bool:
        name = _category_name(category)
        if name == ConsentCategory.necessary.value:
            return True
        if not self._state.has_interacted:
            return False
        return self._state.choices.get(name) is True

    def has_any_tracking_consent(self) -> bool:
        return self.can_track(ConsentCategory.analytics) or self.can_track(ConsentCategory.marketing)

    def consent_signals(self) -> dict[str, str]:
        """Granted/denied map for SDKs that support a consent mode."""
        analytics = "granted" if self.can_track(ConsentCategory.analytics) else "denied"
        marketing = "granted" if self.can_track(ConsentCategory.marketing) else "denied"
        return {
            "analytics_storage": analytics,
            "ad_storage": marketing,
            "ad_user_data": marketing,
            "ad_personalization": marketing,
            "functionality_storage": "granted",
            "personalization_storage": analytics,
            "security_storage": "granted",
        }

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def accept_all(self) -> ConsentState:
        return self._save({"necessary": True, "analytics": True, "marketing": True})

    def accept_necessary(self) -> ConsentState:
        return self._save({"necessary": True, "analytics": False, "marketing": False})

    def update_categories(self, choices: dict[ConsentCategory | str, bool]) -> ConsentState:
        merged = dict(self._state.choices)
        for category, granted in choices.items():
            name = _category_name(category)
            if name not in _CATEGORIES:
                logger.warning("Ignoring unknown consent category %r", name)
                continue
            merged[name] = bool(granted)
        return self._save(merged)

    def withdraw_consent(self) -> ConsentState:
        """Revoke everything but ``necessary`` and tell listeners to stop tracking."""
        state = self.accept_necessary()
        self._notify(self._withdraw_listeners, state)
        return state

    # ------------------------------------------------------------------
    # Banner / preferences UI state
    # ------------------------------------------------------------------

    @property
    def should_show_banner(self) -> bool:
        return not self._state.has_interacted

    def open_preferences(self) -> None:
        self.preferences_open = True

    def close_preferences(self) -> None:
        self.preferences_open = False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_change(self, listener: ConsentListener) -> None:
        self._change_listeners.append(listener)

    def on_withdraw(self, listener: ConsentListener) -> None:
        self._withdraw_listeners.append(listener)

    def audit_log(self) -> dict:
        """Non-PII snapshot for an audit trail."""
        return {
            "consent_version": self._state.version,
            "consent_timestamp": self._state.timestamp.isoformat(),
            "consent_analytics": self._state.choices.get("analytics", False),
            "consent_marketing": self._state.choices.get("marketing", False),
            "consent_has_interacted": self._state.has_interacted,
        }
