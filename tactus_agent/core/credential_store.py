"""Key-value persistence for OAuth credential blobs."""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Async key-value store holding one JSON-compatible value per key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class InMemoryCredentialStore(CredentialStore):
    """Process-local store, used by tests and hosts that do not persist."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._data: Dict[str, Dict[str, Any]] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = self._data.get(key)
            return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class JSONFileCredentialStore(CredentialStore):
    """All credentials in a single JSON file readable only by its owner."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read credential file {self.path}: {e}")
            return {}

    def _write(self, data: Dict[str, Dict[str, Any]]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self._read().get(key)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)
            logger.debug(f"Stored credentials under {key}")

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)
                logger.debug(f"Removed credentials under {key}")
