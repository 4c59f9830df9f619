"""Key-value persistence for memory and learning state.

Memory and learning components only ever see ``get``/``set``/``clear``.
Writes go through a ``BackgroundWriter`` so the turn path never waits on disk.
"""

import json
import logging
import os
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get("VOICE_COACH_DATA_DIR") or Path(__file__).parent.parent.parent / "data")

_KEY_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


class KeyValueStore:
    """Interface. Values are plain JSON-compatible structures."""

    def get(self, key: str):
        raise NotImplementedError

    def set(self, key: str, value) -> None:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """Dict-backed store. Values are copied through JSON so callers can't alias them."""

    def __init__(self, initial: dict | None = None):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str):
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw

    def clear(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class JsonFileStore(KeyValueStore):
    """One pretty-printed JSON file per key under ``root``."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root else DATA_DIR / "voice"

    def _path(self, key: str) -> Path:
        safe = _KEY_RE.sub("_", key).strip("_") or "default"
        return self.root / f"{safe}.json"

    def get(self, key: str):
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupt store entry %s (%s)", path, exc)
            return None

    def set(self, key: str, value) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, indent=2))
        tmp.replace(path)

    def clear(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class BackgroundWriter:
    """Runs persistence jobs one at a time on a dedicated thread.

    Failures are logged and dropped: in-memory state stays authoritative.
    """

    def __init__(self, name: str = "store-writer"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._closed = False

    def submit(self, job: Callable[[], None], description: str = "write") -> Future | None:
        if self._closed:
            logger.warning("Writer closed, skipping %s", description)
            return None
        return self._executor.submit(self._run, job, description)

    @staticmethod
    def _run(job: Callable[[], None], description: str) -> None:
        try:
            job()
        except Exception as exc:
            logger.warning("Background %s failed (%s)", description, exc)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until every job submitted so far has run. Shutdown and tests only."""
        if self._closed:
            return
        marker = self._executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._executor.shutdown(wait=True)


def safe_get(store: KeyValueStore, key: str, default=None):
    """Read through the store, logging and swallowing storage errors."""
    try:
        value = store.get(key)
    except Exception as exc:
        logger.warning("Could not read %r from store (%s)", key, exc)
        return default
    return default if value is None else value
