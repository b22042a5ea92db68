"""Local key/value persistence for the pairing client."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from client.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class MemoryStorage:
    """In-process storage. Lives as long as the object; used by tests and embedders."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})

    def load(self, key: str) -> Any:
        return self._data.get(key)

    def save(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> dict[str, Any]:
        return dict(self._data)


class FileStorage:
    """JSON file holding every key for one install.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageUnavailable(f"Cannot read {self.path}: {exc}") from exc

    def _write(self, data: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot write {self.path}: {exc}") from exc

    def load(self, key: str) -> Any:
        with self._lock:
            return self._read().get(key)

    def save(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def clear(self) -> None:
        with self._lock:
            self._write({})
        logger.info("Cleared client storage at %s", self.path)

    def items(self) -> dict[str, Any]:
        with self._lock:
            return self._read()
