"""Key/value persistence for client-side analytics state.

Identity, consent and cost counters are stored as small JSON documents under
string keys.  Any backend that can get/set/remove strings will do; two are
provided here:

- ``MemoryStorage``: process-local dict, also the fallback when a persistent
  backend stops working.
- ``JsonFileStorage``: a single JSON object on disk, rewritten on every change.

Backends signal failure by raising ``StorageError`` (or ``OSError``); callers
are expected to catch it and degrade, never to surface it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol


class StorageError(Exception):
    """Raised when a storage backend cannot read or write."""


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStorage:
    """Persist keys as one JSON object in ``path``.

    The file is read on every ``get`` so several processes on the same
    machine observe each other's writes (last writer wins).
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return data

    def _dump(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


def storage_available(storage: KeyValueStorage) -> bool:
    """Probe a backend with a throwaway write."""
    test_key = "__storage_test__"
    try:
        storage.set(test_key, test_key)
        storage.remove(test_key)
        return True
    except (StorageError, OSError):
        return False
