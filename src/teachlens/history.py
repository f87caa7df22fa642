"""Bounded, persisted history of past classifications.

The whole log is stored as one JSON array under a fixed key of a key-value
store and is always rewritten as a whole document (last writer wins).
Storage problems never reach the caller: history degrades to in-memory only.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from teachlens.errors import PersistenceError

logger = logging.getLogger(__name__)

HISTORY_KEY = "tm-image-history-v1"
MAX_HISTORY = 10


class HistoryEntry(BaseModel):
    """One completed classification, as persisted (camelCase on the wire)."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        ser_json_inf_nan="constants",
    )

    id: str
    thumbnail: str
    best_label: str
    best_probability: float
    timestamp: str


_LOG_ADAPTER = TypeAdapter(list[HistoryEntry])


# ---------------------------------------------------------------------------
# Key-value storage
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    """Durable string storage. Implementations raise PersistenceError."""

    def get(self, key: str) -> str | None:
        """Return the value stored under ``key`` or None if absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        ...


class MemoryStore:
    """Volatile key-value store."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileStore:
    """Key-value store backed by a single JSON object file.

    Writes go to a temporary file in the same directory which then replaces
    the original, so a crash mid-write never leaves a truncated document.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self, key: str) -> str | None:
        value = self._read_document().get(key)
        if value is not None and not isinstance(value, str):
            raise PersistenceError(f"Value for {key!r} in {self.path} is not a string")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            document = self._read_document()
        except PersistenceError:
            logger.warning("Replacing unreadable store %s", self.path)
            document = {}
        document[key] = value

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Cannot write {self.path}: {exc}") from exc

    def _read_document(self) -> dict[str, object]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self.path}: {exc}") from exc

        try:
            document = json.loads(raw.decode("utf-8"))
        except ValueError as exc:  # includes UnicodeDecodeError
            raise PersistenceError(f"Corrupt store {self.path}: {exc}") from exc
        if not isinstance(document, dict):
            raise PersistenceError(f"Corrupt store {self.path}: top level is not an object")
        return document


# ---------------------------------------------------------------------------
# History store
# ---------------------------------------------------------------------------


def new_entry_id() -> str:
    """Time-ordered prefix plus a random UUID4."""
    return f"{time.time_ns():x}-{uuid.uuid4().hex}"


class HistoryStore:
    """Newest-first log of at most ``max_history`` entries."""

    def __init__(
        self,
        storage: KeyValueStore,
        key: str = HISTORY_KEY,
        max_history: int = MAX_HISTORY,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._storage = storage
        self._key = key
        self._max_history = max_history
        self._entries: list[HistoryEntry] = []

    @property
    def max_history(self) -> int:
        return self._max_history

    def load(self) -> tuple[HistoryEntry, ...]:
        """Read the persisted log. Missing or corrupt state loads as empty."""
        try:
            raw = self._storage.get(self._key)
            entries = [] if not raw else _LOG_ADAPTER.validate_json(raw)
        except (PersistenceError, ValidationError) as exc:
            logger.warning("Could not load history, starting empty: %s", exc)
            entries = []

        if len(entries) > self._max_history:
            entries = entries[: self._max_history]
        self._entries = entries
        logger.info("Loaded %d history entries", len(self._entries))
        return self.list()

    def append(
        self,
        thumbnail: str,
        best_label: str,
        best_probability: float,
        timestamp: str,
    ) -> HistoryEntry:
        """Prepend a new entry, evict beyond the cap, persist, and return it."""
        entry = HistoryEntry(
            id=new_entry_id(),
            thumbnail=thumbnail,
            best_label=best_label,
            best_probability=best_probability,
            timestamp=timestamp,
        )
        self._entries.insert(0, entry)
        if len(self._entries) > self._max_history:
            evicted = len(self._entries) - self._max_history
            del self._entries[self._max_history :]
            logger.debug("Evicted %d oldest history entries", evicted)
        self._persist()
        return entry

    def clear(self) -> None:
        """Drop every entry and persist the empty log."""
        self._entries = []
        self._persist()
        logger.info("History cleared")

    def list(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def _persist(self) -> None:
        try:
            payload = _LOG_ADAPTER.dump_json(self._entries, by_alias=True).decode("utf-8")
            self._storage.set(self._key, payload)
        except Exception as exc:
            logger.error("Could not save history, keeping it in memory only: %s", exc)
