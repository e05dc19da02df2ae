# =============================================================================
# storage.py
# Key-value persistence backends for settings and history.
#
# Backends are synchronous: get(key) -> str | None, set(key, value), and
# delete(key). set() raises QuotaExceededError when the value would push the
# backend over its quota and StorageUnavailableError when the backend cannot
# be used at all. Repositories catch both at their boundary.
# =============================================================================

import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

from loguru import logger

from constants import STORAGE_QUOTA_BYTES


class StorageError(Exception):
    """Base error for key-value backend failures."""


class StorageUnavailableError(StorageError):
    """The backend cannot be read from or written to."""


class QuotaExceededError(StorageError):
    """A write would exceed the backend's capacity."""


def _byte_size(value: str) -> int:
    return len(value.encode("utf-8"))


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class MemoryStorage:
    """Dict-backed store. Used by tests and as a non-persistent fallback."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        if self.quota_bytes is not None:
            others = sum(_byte_size(v) for k, v in self._data.items() if k != key)
            if others + _byte_size(value) > self.quota_bytes:
                raise QuotaExceededError(
                    f"Writing {key!r} would exceed the {self.quota_bytes} byte quota")
        self._data[key] = value

    def delete(self, key: str):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


# =============================================================================
# FILE BACKEND
# =============================================================================

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class FileStorage:
    """
    One file per key under a directory. Writes go to a temp file first and
    are moved into place, so a crash never leaves a half-written record.
    """

    def __init__(self, directory: Union[str, Path],
                 quota_bytes: Optional[int] = STORAGE_QUOTA_BYTES):
        self.directory   = Path(directory).expanduser()
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    def _used_bytes(self, exclude: Path) -> int:
        total = 0
        for p in self.directory.glob("*.json"):
            if p == exclude:
                continue
            try:
                total += p.stat().st_size
            except FileNotFoundError:
                continue         # removed by a concurrent delete
        return total

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {path}: {e}") from e

    def set(self, key: str, value: str):
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if self.quota_bytes is not None:
                if self._used_bytes(exclude=path) + _byte_size(value) > self.quota_bytes:
                    raise QuotaExceededError(
                        f"Writing {key!r} would exceed the {self.quota_bytes} byte quota")
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=path.stem, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except StorageError:
            raise
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {path}: {e}") from e
        logger.debug(f"Stored {key!r} ({_byte_size(value)} bytes) at {path}")

    def delete(self, key: str):
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageUnavailableError(f"Cannot delete {path}: {e}") from e


# =============================================================================
# AVAILABILITY PROBE
# =============================================================================

def probe_storage(storage, test_key: str = "__media_analyzer_test__") -> bool:
    """Write and delete a throwaway key. False if either step fails."""
    try:
        storage.set(test_key, "test")
        storage.delete(test_key)
        return True
    except Exception as e:
        logger.debug(f"Storage probe failed: {e}")
        return False
