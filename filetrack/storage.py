"""
Storage abstraction layer for FileTrack.
Pluggable blob store for uploaded file content, keyed by a generated name.
Stored bytes are never rewritten.
"""
import logging
import os
import secrets
import time
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filetrack.errors import StorageUnavailable
from filetrack.models import FileBlob
from filetrack.utils import get_storage_mode, get_storage_path, sanitize_filename

logger = logging.getLogger(__name__)


def generate_storage_key(original_name: str) -> str:
    """Build a unique storage key of the form ``<stem>_<millis>_<random>.<ext>``."""
    name = sanitize_filename(original_name)
    stem, ext = os.path.splitext(name)
    stem = stem.replace(" ", "_")[:100] or "file"
    return f"{stem}_{int(time.time() * 1000)}_{secrets.token_hex(8)}{ext}"


class StorageAdapter(ABC):
    """Abstract base class for storage adapters."""

    @abstractmethod
    def put(self, data: bytes, original_name: str) -> str:
        """Store bytes and return the storage key."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return stored bytes, or None when the key is unknown."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove stored bytes."""

    def ref(self, key: str) -> str:
        """Location recorded on the file record."""
        return key


class DatabaseStorageAdapter(StorageAdapter):
    """Database storage adapter keeping content in the file_blobs table."""

    def __init__(self, db: Session):
        self.db = db

    def put(self, data: bytes, original_name: str) -> str:
        key = generate_storage_key(original_name)
        try:
            self.db.add(FileBlob(key=key, data=data))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Could not store blob %s", key)
            raise StorageUnavailable("File storage is unavailable") from exc
        return key

    def get(self, key: str) -> Optional[bytes]:
        blob = self.db.get(FileBlob, key)
        return blob.data if blob else None

    def delete(self, key: str) -> bool:
        blob = self.db.get(FileBlob, key)
        if not blob:
            return False
        self.db.delete(blob)
        self.db.commit()
        return True

    def ref(self, key: str) -> str:
        return f"db://{key}"


class FilesystemStorageAdapter(StorageAdapter):
    """Filesystem storage adapter writing one file per key under storage_path."""

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        os.makedirs(storage_path, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.storage_path, sanitize_filename(key))

    def put(self, data: bytes, original_name: str) -> str:
        key = generate_storage_key(original_name)
        try:
            # "xb" refuses to overwrite an existing blob
            with open(self._path(key), "xb") as handle:
                handle.write(data)
        except OSError as exc:
            logger.exception("Could not write blob %s", key)
            raise StorageUnavailable("File storage is unavailable") from exc
        return key

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            logger.exception("Could not read blob %s", key)
            raise StorageUnavailable("File storage is unavailable") from exc

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True

    def ref(self, key: str) -> str:
        return self._path(key)


def get_storage_adapter(db: Session) -> StorageAdapter:
    """
    Factory function to get appropriate storage adapter.
    Based on STORAGE_MODE environment variable.
    """
    storage_mode = get_storage_mode()

    if storage_mode == "database":
        return DatabaseStorageAdapter(db)
    elif storage_mode == "filesystem":
        return FilesystemStorageAdapter(get_storage_path())
    else:
        raise ValueError(f"Unknown storage mode: {storage_mode}")
