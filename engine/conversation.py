"""Conversation history — bounded, persisted turn log plus the LLM context window.

Two truncation policies apply to the same log and must stay separate:
  - HISTORY_LIMIT: how many turns are persisted (applied on every write)
  - CONTEXT_LIMIT: how many prior turns are sent to the completion service
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from .types import Turn

log = logging.getLogger("history")

HISTORY_LIMIT = 200
CONTEXT_LIMIT = 40  # 40 messages = ~20 exchanges

_TURNS = TypeAdapter(list[Turn])


# ── Key-value persistence ─────────────────────────────────────

class KeyValueStore(ABC):
    """A string slot per key. Implementations may raise OSError freely."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key. Missing keys are not an error."""


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore(KeyValueStore):
    """One JSON file per key inside a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a half-written slot
        tmp = self._path(key).with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(self._path(key))

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# ── History store ─────────────────────────────────────────────

class HistoryStore:
    """Ordered log of turns persisted in one key-value slot.

    Storage is best-effort: an absent or corrupt slot reads as an empty
    history, and failed writes are logged and otherwise ignored.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = "conversation_history",
        limit: int = HISTORY_LIMIT,
    ):
        self._store = store
        self._key = key
        self.limit = limit

    def load(self) -> list[Turn]:
        """Return the persisted turns, or [] if absent or unreadable."""
        try:
            raw = self._store.get(self._key)
        except (OSError, ValueError) as e:
            log.warning("History storage unavailable: %s", e)
            return []
        if not raw:
            return []
        try:
            turns = _TURNS.validate_json(raw)
        except (ValidationError, ValueError) as e:
            log.warning("Discarding corrupt history payload: %s", str(e)[:200])
            return []
        return turns[-self.limit:]

    def append(self, turn: Turn) -> list[Turn]:
        """Add one turn, persist the truncated log and return it.

        Re-appending a turn that is already stored is a no-op.
        """
        turns = self.load()
        if any(t.id == turn.id for t in turns):
            return turns
        turns.append(turn)
        turns = turns[-self.limit:]
        self._save(turns)
        return turns

    def clear(self) -> None:
        try:
            self._store.delete(self._key)
        except OSError as e:
            log.warning("Failed to clear history storage: %s", e)
        log.info("History cleared")

    def _save(self, turns: list[Turn]) -> None:
        try:
            self._store.set(self._key, _TURNS.dump_json(turns).decode("utf-8"))
        except OSError as e:
            log.warning("Failed to persist history (%d turns): %s", len(turns), e)


def context_window(turns: list[Turn], limit: int = CONTEXT_LIMIT) -> list[dict]:
    """Map the most recent `limit` turns to {role, text} pairs for the LLM."""
    if limit <= 0:
        return []
    return [{"role": t.role.value, "text": t.text} for t in turns[-limit:]]


def turns_to_json(turns: list[Turn]) -> list[dict]:
    """JSON-safe dicts for sending history over the wire."""
    return json.loads(_TURNS.dump_json(turns))
