"""Local Persistent Store - durable per-key string store"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from core.errors import PersistenceError

logger = logging.getLogger(__name__)

# One lock per backing file, shared by every LocalStore opened on it in this process
_file_locks: Dict[str, threading.RLock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: Optional[Path]) -> threading.RLock:
    if path is None:
        return threading.RLock()
    key = str(path.resolve())
    with _file_locks_guard:
        if key not in _file_locks:
            _file_locks[key] = threading.RLock()
        return _file_locks[key]


class LocalStore:
    """
    Key -> string store that survives restarts.

    Backed by a single JSON document that is re-read on every access, so two
    owners of the same file (an orchestrator and a section mounted in another
    tree) always see each other's writes. Writes go through a temp file and
    os.replace, so a crash mid-write never leaves a truncated document.
    Every read-modify-write holds a per-file lock shared by all stores in the
    process, plus an flock on a sidecar file on POSIX, so concurrent writers
    of disjoint keys never drop each other's updates.
    With path=None the store lives in memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._memory: Dict[str, str] = {}
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = _lock_for(self.path)

    @property
    def lock_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_name(self.path.name + ".lock")

    def __contains__(self, key: str) -> bool:
        return key in self._read()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._read().get(key, default)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"LocalStore values must be str, got {type(value).__name__}")
        with self._locked():
            data = self._read()
            if data.get(key) == value:
                return
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> bool:
        with self._locked():
            data = self._read()
            if key not in data:
                return False
            del data[key]
            self._write(data)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._read() if k.startswith(prefix))

    def remove_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number removed."""
        with self._locked():
            data = self._read()
            doomed = [k for k in data if k.startswith(prefix)]
            if not doomed:
                return 0
            for key in doomed:
                del data[key]
            self._write(data)
        logger.info(f"Removed {len(doomed)} keys under {prefix!r}")
        return len(doomed)

    @contextmanager
    def _locked(self):
        with self._lock:
            if self.lock_path is None or os.name != "posix":
                yield
                return

            import fcntl

            try:
                lock_file = open(self.lock_path, "a")
            except OSError as e:
                raise PersistenceError(f"Failed to open lock file {self.lock_path}: {e}") from e
            with lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _read(self) -> Dict[str, str]:
        if self.path is None:
            return dict(self._memory)

        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read local store {self.path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Local store {self.path} is not a JSON object, ignoring it")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: Dict[str, str]) -> None:
        if self.path is None:
            self._memory = dict(data)
            return

        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write local store {self.path}: {e}") from e
