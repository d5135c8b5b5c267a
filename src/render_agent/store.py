"""
Durable key-value storage for queue state and render history.

`JsonFileStore` keeps every key in one JSON document and rewrites it
atomically. `CoalescingFlusher` batches mutations: the first change arms a
single timer and everything dirtied before it fires goes out in one write.
"""
import asyncio
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Store boundary: `get(key, default)` / `set(key, value)`."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """In-memory store; values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Single JSON file store with atomic replace on write."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        self._cache: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache

        if not self.path.exists():
            self._cache = {}
            return self._cache

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read store {self.path}: {e}") from e

        if not text.strip():
            self._cache = {}
            return self._cache

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Store {self.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"Store {self.path} must contain a JSON object")

        self._cache = data
        return self._cache

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write store {self.path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        data = self._load()
        if key not in data:
            return default
        return copy.deepcopy(data[key])

    def set(self, key: str, value: Any) -> None:
        data = dict(self._load())
        data[key] = copy.deepcopy(value)
        self._write(data)
        self._cache = data

    def delete(self, key: str) -> None:
        data = dict(self._load())
        if key in data:
            del data[key]
            self._write(data)
            self._cache = data


class CoalescingFlusher:
    """
    Dirty flag plus one flush timer.

    `mark_dirty()` arms the timer only if none is pending, so a write happens
    at most `delay` seconds after the first unsaved mutation no matter how
    many follow. `flush()` writes immediately; call it on shutdown. Without a
    running event loop, `mark_dirty()` writes through.
    """

    def __init__(self, write: Callable[[], None], delay: float = 1.0, name: str = "store"):
        self._write = write
        self.delay = delay
        self.name = name
        self.dirty = False
        self._timer: Optional[asyncio.TimerHandle] = None

    def mark_dirty(self) -> None:
        self.dirty = True
        if self._timer is not None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return

        self._timer = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def flush(self) -> bool:
        """Write now if dirty. Returns False if the write failed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if not self.dirty:
            return True

        self.dirty = False
        try:
            self._write()
        except PersistenceError as e:
            # Keep running on the in-memory state; retry on the next mutation
            self.dirty = True
            logger.error(f"Failed to persist {self.name}: {e}")
            return False
        return True

    @property
    def pending(self) -> bool:
        return self._timer is not None
