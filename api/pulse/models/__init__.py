from pulse.models.base import Base
from pulse.models.processed_event import ProcessedEvent

__all__ = [
    "Base",
    "ProcessedEvent",
]
