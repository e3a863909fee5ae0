"""
Key-value storage backends.

Records are plain strings addressed by string keys, the same shape the
vault index and envelopes are persisted in. ``MemoryStorage`` keeps them
in a dict; ``FileStorage`` keeps them in a single JSON document on disk.
"""
import os
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import orjson

from .exceptions import StorageError

logger = logging.getLogger("dualkey.vault")


class AbstractStorage(ABC):
    """Minimal string key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any prior value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List stored keys."""


class MemoryStorage(AbstractStorage):
    def __init__(self, records: Optional[dict[str, str]] = None):
        self._records: dict[str, str] = dict(records or {})

    def get(self, key: str) -> Optional[str]:
        return self._records.get(key)

    def set(self, key: str, value: str) -> None:
        self._records[key] = value

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._records.keys())


class FileStorage(AbstractStorage):
    """All records in one JSON object file.

    Every write rewrites the whole document through a temporary file
    followed by ``os.replace``, so a crash never leaves a partial file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_bytes()
        except OSError as err:
            raise StorageError(
                f"Unable to read storage file: {err}", key=str(self.path)
            ) from err
        if not raw.strip():
            return {}
        try:
            records = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise StorageError(
                "Storage file is not valid JSON", key=str(self.path)
            ) from err
        if not isinstance(records, dict):
            raise StorageError(
                "Storage file must contain a JSON object", key=str(self.path)
            )
        return records

    def _write(self, records: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".vault-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(orjson.dumps(records))
            os.replace(tmp, self.path)
        except OSError as err:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StorageError(
                f"Unable to write storage file: {err}", key=str(self.path)
            ) from err
        logger.debug("Storage file written: %d record(s)", len(records))

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        records = self._read()
        records[key] = value
        self._write(records)

    def delete(self, key: str) -> None:
        records = self._read()
        if records.pop(key, None) is not None:
            self._write(records)

    def keys(self) -> list[str]:
        return list(self._read().keys())
