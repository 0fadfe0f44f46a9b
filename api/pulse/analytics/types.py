"""Shared types for the client-side analytics pipeline."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Callable

from pydantic import AwareDatetime, BaseModel, Field

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    """UTC calendar date as ``YYYY-MM-DD``."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------

class ConsentCategory(str, enum.Enum):
    necessary = "necessary"
    analytics = "analytics"
    marketing = "marketing"


CONSENT_VERSION = "1.0.0"


class ConsentState(BaseModel):
    version: str = CONSENT_VERSION
    timestamp: datetime = Field(default_factory=utc_now)
    choices: dict[str, bool] = Field(
        default_factory=lambda: {"necessary": True, "analytics": False, "marketing": False}
    )
    has_interacted: bool = False
    banner_shown: bool = False


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class IdentityConfig(BaseModel):
    anonymous_id_expiry_days: int = 365
    session_timeout_minutes: int = 30
    daily_session_reset: bool = True


class AnonymousIdRecord(BaseModel):
    # records may come from other processes; naive datetimes are rejected
    id: str
    created_at: AwareDatetime
    expires_at: AwareDatetime


class SessionRecord(BaseModel):
    id: str
    session_started_at: AwareDatetime
    last_activity_at: AwareDatetime
    day_key: str


class Identity(BaseModel):
    anonymous_id: str
    session_id: str
    anonymous_id_created_at: datetime
    session_started_at: datetime
    last_activity_at: datetime
    day_key: str
    is_persisted: bool = True


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class AnalyticsConfig(BaseModel):
    enabled: bool = True
    debug_mode: bool = False
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    environment: str = "development"
    app_version: str = "1.0.0"


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

class FeatureFlag(BaseModel):
    name: str
    enabled: bool
    variant: str | None = None
    targeting_rules: dict | None = None


class ExperimentAssignment(BaseModel):
    experiment_id: str
    variant: str
    assigned_at: datetime
    session_id: str
