"""Device identity persistence."""

from __future__ import annotations
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from .constants import DEVICE_ID_KEY
from .messages import Icons
from .protocol import LobbyLinkError

log = logging.getLogger(__name__)


class StorageError(LobbyLinkError):
    """Raised when the identity store cannot be read or written."""
    pass


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryStore:
    """Process-local store, mostly for tests and throwaway clients."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value
        self.writes += 1


class JsonFileStore:
    """Flat string map kept in a JSON file.

    Writes go to a temporary file that replaces the original, so a crash
    mid-write never leaves a half-written store behind. A file that exists but
    cannot be parsed is reported as StorageError instead of being reset.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            if self.path.stat().st_size == 0:
                return {}
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return data

    def get(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e


def new_device_id() -> str:
    return str(uuid.uuid4())


class IdentityStore:
    """Get-or-create the stable device identifier of this installation."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = DEVICE_ID_KEY,
        id_factory: Callable[[], str] = new_device_id,
    ):
        self.store = store
        self.key = key
        self._id_factory = id_factory
        self._cached: Optional[str] = None

    def get_or_create_identity(self) -> str:
        """Return the persisted device id, generating and saving one on first use.

        Raises:
            StorageError: If the backing store fails"""
        if self._cached:
            return self._cached
        try:
            device_id = self.store.get(self.key)
            if not device_id:
                device_id = self._id_factory()
                self.store.set(self.key, device_id)
                log.info(f"{Icons.INFO} Generated new device id {device_id[:8]}...")
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Identity store failure: {e}") from e
        self._cached = device_id
        return device_id
