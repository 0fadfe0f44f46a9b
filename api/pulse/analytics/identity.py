"""Anonymous identity and session management.

The anonymous id is a random UUID kept for ``anonymous_id_expiry_days``; the
session id rotates after ``session_timeout_minutes`` of inactivity and, when
``daily_session_reset`` is on, at the first activity of a new UTC day.

Nothing here collects PII.  If the storage backend fails the store switches
to an in-memory backend for the rest of the process, so callers always get an
identity back.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta

from pydantic import ValidationError

from pulse.analytics.storage import (
    KeyValueStorage,
    MemoryStorage,
    StorageError,
    storage_available,
)
from pulse.analytics.types import (
    AnonymousIdRecord,
    Clock,
    Identity,
    IdentityConfig,
    SessionRecord,
    day_key,
    utc_now,
)

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "pulse_anonymous_id"
SESSION_KEY = "pulse_session"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_anonymous_id() -> str:
    return str(uuid.uuid4())


def generate_session_id(now: datetime) -> str:
    """``<base36 epoch millis>-<8 random base36 chars>``."""
    millis = int(now.timestamp() * 1000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"{_base36(millis)}-{random_part}"


class IdentityStore:
    def __init__(
        self,
        storage: KeyValueStorage,
        config: IdentityConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self.config = config or IdentityConfig()
        self._clock = clock
        self._persisted = True

    @property
    def is_persisted(self) -> bool:
        return self._persisted

    # ------------------------------------------------------------------
    # Storage access (never raises)
    # ------------------------------------------------------------------

    def _fall_back(self, exc: Exception) -> None:
        if self._persisted:
            logger.warning("Identity storage unavailable, using in-memory identity: %s", exc)
        self._storage = MemoryStorage()
        self._persisted = False

    def _read(self, key: str) -> str | None:
        try:
            return self._storage.get(key)
        except (StorageError, OSError) as exc:
            self._fall_back(exc)
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._storage.set(key, value)
        except (StorageError, OSError) as exc:
            self._fall_back(exc)
            self._storage.set(key, value)

    def _remove(self, key: str) -> None:
        try:
            self._storage.remove(key)
        except (StorageError, OSError) as exc:
            self._fall_back(exc)

    def storage_available(self) -> bool:
        return storage_available(self._storage)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _anonymous_record(self, config: IdentityConfig) -> AnonymousIdRecord:
        now = self._clock()
        raw = self._read(ANONYMOUS_ID_KEY)
        if raw:
            try:
                record = AnonymousIdRecord.model_validate_json(raw)
                if record.expires_at > now:
                    return record
            except ValidationError:
                logger.debug("Discarding malformed anonymous id record")

        record = AnonymousIdRecord(
            id=generate_anonymous_id(),
            created_at=now,
            expires_at=now + timedelta(days=config.anonymous_id_expiry_days),
        )
        self._write(ANONYMOUS_ID_KEY, record.model_dump_json())
        return record

    def _is_live(self, record: SessionRecord, config: IdentityConfig, now: datetime) -> bool:
        idle = now - record.last_activity_at
        if idle >= timedelta(minutes=config.session_timeout_minutes):
            return False
        if config.daily_session_reset and record.day_key != day_key(now):
            return False
        return True

    def _session_record(self, config: IdentityConfig) -> SessionRecord:
        now = self._clock()
        raw = self._read(SESSION_KEY)
        if raw:
            try:
                record = SessionRecord.model_validate_json(raw)
                if self._is_live(record, config, now):
                    record.last_activity_at = now
                    self._write(SESSION_KEY, record.model_dump_json())
                    return record
            except ValidationError:
                logger.debug("Discarding malformed session record")

        record = SessionRecord(
            id=generate_session_id(now),
            session_started_at=now,
            last_activity_at=now,
            day_key=day_key(now),
        )
        self._write(SESSION_KEY, record.model_dump_json())
        return record

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_identity(self, config: IdentityConfig | None = None) -> Identity:
        """Return the current identity, minting ids that are missing or stale.

        The anonymous id may exist before consent is given; it should only be
        attached to outgoing events once tracking is allowed.
        """
        config = config or self.config
        anonymous = self._anonymous_record(config)
        session = self._session_record(config)
        return Identity(
            anonymous_id=anonymous.id,
            session_id=session.id,
            anonymous_id_created_at=anonymous.created_at,
            session_started_at=session.session_started_at,
            last_activity_at=session.last_activity_at,
            day_key=session.day_key,
            is_persisted=self._persisted,
        )

    def get_anonymous_id(self) -> str:
        return self._anonymous_record(self.config).id

    def get_session_id(self) -> str:
        return self._session_record(self.config).id

    def refresh_session(self) -> None:
        """Bump ``last_activity_at`` of the current session, keeping its id."""
        raw = self._read(SESSION_KEY)
        if not raw:
            return
        try:
            record = SessionRecord.model_validate_json(raw)
        except ValidationError:
            return
        record.last_activity_at = self._clock()
        self._write(SESSION_KEY, record.model_dump_json())

    def reset_session(self) -> str:
        """Force a new session id; the anonymous id is preserved."""
        self._remove(SESSION_KEY)
        return self._session_record(self.config).id

    def clear_identity(self) -> None:
        """Forget both ids (consent withdrawal / opt-out)."""
        self._remove(ANONYMOUS_ID_KEY)
        self._remove(SESSION_KEY)
