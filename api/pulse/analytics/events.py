import enum
import re
from typing import Any

from pydantic import BaseModel, Field

EVENT_NAME_MAX_LENGTH = 40

MOBILE_MAX_WIDTH = 768
TABLET_MAX_WIDTH = 1024


class EventType(str, enum.Enum):
    track = "track"
    page_view = "page_view"
    conversion = "conversion"


class CanonicalEvent(BaseModel):
    type: EventType
    event_name: str | None = None
    event_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class PageContext(BaseModel):
    """What a browser would know about the current page."""

    url: str = ""
    path: str = ""
    title: str = ""
    referrer: str = ""
    viewport_width: int | None = None
    viewport_height: int | None = None
    locale: str | None = None
    user_agent: str | None = None


def sanitize_event_name(name: str) -> str:
    """snake_case, ``[a-z0-9_]`` only, at most 40 characters."""
    return re.sub(r"[^a-z0-9_]", "_", name.lower())[:EVENT_NAME_MAX_LENGTH]


def device_class(viewport_width: int | None) -> str:
    if viewport_width is None:
        return "desktop"
    if viewport_width < MOBILE_MAX_WIDTH:
        return "mobile"
    if viewport_width < TABLET_MAX_WIDTH:
        return "tablet"
    return "desktop"
