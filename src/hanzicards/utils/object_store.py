"""Object storage interface and a filesystem implementation."""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from hanzicards.exceptions import StorageError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Key/value blob storage used for generated media.

    Implementations must make ``put`` atomic: a key is either absent or holds
    the complete payload.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the object bytes, or None if the key does not exist."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether ``key`` holds an object."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False if nothing was deleted."""

    @abstractmethod
    def list_keys(self, prefix: str = "") -> List[str]:
        """List keys under ``prefix``."""

    def url_for(self, key: str) -> str:
        return key


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store.

    Keys map to paths under ``root``. Writes go to a temp file and are moved
    into place with ``os.replace``.
    """

    def __init__(self, root: str | Path, public_url: str = ""):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            with open(temp_file, "wb") as f:
                f.write(data)
            os.replace(temp_file, path)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        finally:
            if temp_file.exists():
                temp_file.unlink()
        logger.debug(f"Stored {key} ({len(data)} bytes, {content_type})")

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.info(f"Deleted {key}")
        return True

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return str(self.root / key)
