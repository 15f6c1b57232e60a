"""
Key-value stores backing the background context.

- Local store: survives restarts, only ever holds encrypted secrets.
- Session store: cleared on sign-out, wallet deletion or process exit.

Writers always read-modify-write the whole record.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from loguru import logger


class StorageError(Exception):
    pass


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get one value, None if absent"""

    @abstractmethod
    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Get the present values among ``keys``"""

    @abstractmethod
    async def set(self, values: dict[str, Any]) -> None:
        """Set several values in one write"""

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Remove keys; missing keys are ignored"""

    @abstractmethod
    async def clear(self) -> None:
        """Remove everything"""


class MemoryStore(KeyValueStore):
    """In-process store. Values are deep-copied in and out."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        return {key: copy.deepcopy(self._data[key]) for key in keys if key in self._data}

    async def set(self, values: dict[str, Any]) -> None:
        self._data.update(copy.deepcopy(values))

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class JsonFileStore(KeyValueStore):
    """
    Whole-record JSON file.

    Each write loads the record, applies the change and atomically replaces
    the file. A lock serializes writers within the process.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StorageError(f"Corrupt store at {self.path}")
        return data

    def _dump(self, data: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    async def get(self, key: str) -> Any | None:
        return self._load().get(key)

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        data = self._load()
        return {key: data[key] for key in keys if key in data}

    async def set(self, values: dict[str, Any]) -> None:
        async with self._lock:
            data = self._load()
            data.update(values)
            self._dump(data)
        logger.debug(f"Stored {sorted(values)} in {self.path.name}")

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            data = self._load()
            for key in keys:
                data.pop(key, None)
            self._dump(data)

    async def clear(self) -> None:
        async with self._lock:
            self._dump({})
