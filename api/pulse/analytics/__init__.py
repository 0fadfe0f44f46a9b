"""Client-side analytics pipeline.

Public API:
- IdentityStore: anonymous id + session lifecycle
- ConsentGate: default-deny consent state and ``can_track``
- Tracker: track / page / conversion pipeline
- DestinationRegistry, Destination: fire-and-forget sinks
- CostControl: volume caps and base sampling

``pulse.analytics.context.AnalyticsContext`` wires these together with the
feature flags; import it from its module.
"""

from pulse.analytics.consent import ConsentGate
from pulse.analytics.cost_control import CostControl, CostControlConfig, ThrottleDecision
from pulse.analytics.destinations import (
    CollectorDestination,
    Destination,
    DestinationRegistry,
    DestinationStatus,
    MeasurementProtocolDestination,
    TelemetryDestination,
)
from pulse.analytics.events import CanonicalEvent, EventType, PageContext
from pulse.analytics.identity import IdentityStore
from pulse.analytics.storage import JsonFileStorage, KeyValueStorage, MemoryStorage, StorageError
from pulse.analytics.tracker import Tracker
from pulse.analytics.types import AnalyticsConfig, ConsentCategory, IdentityConfig

__all__ = [
    "AnalyticsConfig",
    "CanonicalEvent",
    "CollectorDestination",
    "ConsentCategory",
    "ConsentGate",
    "CostControl",
    "CostControlConfig",
    "Destination",
    "DestinationRegistry",
    "DestinationStatus",
    "EventType",
    "IdentityConfig",
    "IdentityStore",
    "JsonFileStorage",
    "KeyValueStorage",
    "MeasurementProtocolDestination",
    "MemoryStorage",
    "PageContext",
    "StorageError",
    "TelemetryDestination",
    "ThrottleDecision",
    "Tracker",
]
