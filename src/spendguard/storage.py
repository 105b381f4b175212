"""Key-value storage collaborator for persisted policy state.

Each policy component keeps its state as one JSON blob under a fixed key.
Stores only move strings around; decoding lives in ``read_json`` so a
malformed blob surfaces as ``CorruptBlobError`` for the owner to recover
from.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Protocol

from .errors import CorruptBlobError


_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._-]")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def sanitize_identifier(value: str) -> str:
    """Return a filesystem-safe identifier."""
    return _SAFE_ID_RE.sub("_", value)


def safe_child_path(base_dir: Path, identifier: str, suffix: str) -> Path:
    """Build a canonical child path under base_dir and reject traversal."""
    safe_name = sanitize_identifier(identifier)
    path = (base_dir / f"{safe_name}{suffix}").resolve()
    base = base_dir.resolve()
    if path.parent != base:
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return path


def read_json(store: KeyValueStore, key: str) -> Any:
    """Decode the blob under ``key``; None when nothing is stored."""
    raw = store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CorruptBlobError(key, str(exc)) from exc


def write_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, sort_keys=True, separators=(",", ":")))


class MemoryStore:
    """Dict-backed store. State lives only as long as the instance."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """One private file per key under ``base_dir``.

    Writes go to a temp file that is fsynced and swapped in with
    ``os.replace``; a directory-wide flock serialises individual calls.
    There is no atomicity across keys.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _path(self, key: str) -> Path:
        return safe_child_path(self.base_dir, key, ".json")

    def get(self, key: str) -> Optional[str]:
        with self._lock():
            path = self._path(key)
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        with self._lock():
            path = self._path(key)
            tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            ensure_private_file(path)

    def delete(self, key: str) -> None:
        with self._lock():
            path = self._path(key)
            if path.exists():
                path.unlink()
