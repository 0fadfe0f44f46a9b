from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from pulse.models.base import Base


class ProcessedEvent(Base):
    """Idempotency record: one row per ``event_id`` per UTC day partition."""

    __tablename__ = "processed_events"

    partition_key: Mapped[str] = mapped_column(String(10), primary_key=True)  # YYYY-MM-DD
    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
