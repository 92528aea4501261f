"""Key-value persistence for progress data.

Backends expose ``get``/``set``/``remove``/``keys`` over string values and may
raise. ``PersistenceAdapter`` sits in front of them and never does: reads that
fail are treated as "nothing stored" and writes are best-effort.
"""

from __future__ import annotations

import json
import logging
import os
import string
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar
from urllib.parse import unquote

logger = logging.getLogger("casebook.storage")

IS_WEB = sys.platform == "emscripten"

T = TypeVar("T")


class StorageError(Exception):
    """Raised by a storage backend that cannot complete an operation."""


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


def get_local_storage() -> Optional[Any]:
    if not IS_WEB:
        return None
    try:
        from js import localStorage  # type: ignore
    except Exception:
        return None
    return localStorage


class MemoryStorage:
    """In-process storage; contents vanish with the object."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class FileStorage:
    """One JSON file per key under ``base_path``, written atomically.

    Keys map to file names reversibly: lowercase letters, digits, ``-`` and
    ``_`` are kept and every other byte becomes ``%XX``, so keys that differ
    only in case never share a file.
    """

    SUFFIX = ".json"
    _SAFE_KEY_CHARS = frozenset(string.ascii_lowercase + string.digits + "-_")

    def __init__(self, base_path: Path | str = "progress") -> None:
        self.base_path = Path(base_path)

    @classmethod
    def encode_key(cls, key: str) -> str:
        if not key.strip():
            raise StorageError(f"Storage key {key!r} must not be blank.")
        return "".join(
            ch if ch in cls._SAFE_KEY_CHARS else "".join(f"%{byte:02X}" for byte in ch.encode("utf-8"))
            for ch in key
        )

    @staticmethod
    def decode_key(name: str) -> str:
        return unquote(name)

    def _path_for(self, key: str) -> Path:
        return self.base_path / f"{self.encode_key(key)}{self.SUFFIX}"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            with path.open("r", encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise StorageError(f"{path} is not UTF-8 text.") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", delete=False, dir=path.parent, prefix=path.name, suffix=".tmp", encoding="utf-8"
            ) as tmp_file:
                tmp_file.write(value)
                tmp_file.write("\n")
                tmp_path = Path(tmp_file.name)
            os.replace(str(tmp_path), str(path))
        except OSError:
            if tmp_path is not None:
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
            raise

    def remove(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> List[str]:
        if not self.base_path.exists():
            return []
        return sorted(
            self.decode_key(child.name[: -len(self.SUFFIX)])
            for child in self.base_path.iterdir()
            if child.is_file() and child.name.endswith(self.SUFFIX)
        )


class WebStorage:
    """Browser ``localStorage`` under a key prefix (Pyodide builds)."""

    def __init__(self, local_storage: Any, prefix: str = "casebook:") -> None:
        self._local_storage = local_storage
        self.prefix = prefix

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._local_storage.getItem(self.prefix + key)
        except Exception as exc:
            raise StorageError(f"localStorage read failed: {exc}") from exc
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        try:
            self._local_storage.setItem(self.prefix + key, value)
        except Exception as exc:
            raise StorageError(f"localStorage write failed: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._local_storage.removeItem(self.prefix + key)
        except Exception as exc:
            raise StorageError(f"localStorage remove failed: {exc}") from exc

    def keys(self) -> List[str]:
        try:
            length = int(self._local_storage.length)
        except Exception:
            length = 0
        result = []
        for index in range(length):
            key = self._local_storage.key(index)
            if key is not None and str(key).startswith(self.prefix):
                result.append(str(key)[len(self.prefix) :])
        return sorted(result)


def open_storage(base_path: Path | str = "progress") -> KeyValueStorage:
    local_storage = get_local_storage()
    if local_storage is not None:
        return WebStorage(local_storage)
    if IS_WEB:
        logger.warning("localStorage unavailable in web build; falling back to filesystem storage.")
    return FileStorage(base_path)


_STORAGE_FAILURES = (StorageError, OSError)
_DECODE_FAILURES = (ValueError, TypeError)


class PersistenceAdapter:
    """JSON values over a storage backend, with every failure swallowed."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage

    def read_raw(self, key: str) -> Any:
        try:
            raw = self.storage.get(key)
        except _STORAGE_FAILURES as exc:
            logger.warning("Reading %r failed; treating as empty: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except _DECODE_FAILURES as exc:
            logger.warning("Stored value for %r is not valid JSON; ignoring it: %s", key, exc)
            return None

    def read(self, key: str, sanitize: Callable[[Any], T]) -> T:
        """Return ``sanitize(stored)``; ``sanitize`` receives ``None`` when nothing usable is stored."""
        return sanitize(self.read_raw(key))

    def exists(self, key: str) -> bool:
        try:
            return self.storage.get(key) is not None
        except _STORAGE_FAILURES:
            return False

    def write(self, key: str, value: Any) -> bool:
        try:
            payload = json.dumps(value, indent=2)
        except _DECODE_FAILURES as exc:
            logger.warning("Value for %r is not serialisable; not saved: %s", key, exc)
            return False
        try:
            self.storage.set(key, payload)
        except _STORAGE_FAILURES as exc:
            logger.warning("Writing %r failed; progress not saved: %s", key, exc)
            return False
        return True

    def remove(self, key: str) -> bool:
        try:
            self.storage.remove(key)
        except _STORAGE_FAILURES as exc:
            logger.warning("Removing %r failed: %s", key, exc)
            return False
        return True
