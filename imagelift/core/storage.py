"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for storing uploads and rendered derivatives.
LocalStorage is the only implementation today; anything that satisfies
IStorage (blob stores, S3) can be swapped in through create_storage().
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from datetime import datetime

from imagelift.core.exceptions import StorageError


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        """
        Upload a file under a generated unique name.

        Args:
            file_data: Raw bytes of the file
            filename: Original filename (only its extension is kept)
            folder: Subfolder/container prefix
            content_type: MIME type of the file

        Returns:
            Storage key that can be used with read(), get_url() and delete()
        """
        pass

    @abstractmethod
    async def save(self, file_data: bytes, storage_key: str, content_type: str = "image/jpeg") -> str:
        """Write a file at a caller-chosen key, replacing any previous content."""
        pass

    @abstractmethod
    async def read(self, storage_key: str) -> bytes:
        """Return the stored bytes. Raises FileNotFoundError if missing."""
        pass

    @abstractmethod
    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """
        Get a URL for accessing the file.

        Args:
            storage_key: The key returned from upload() or save()
            expires_in: Seconds until URL expires (for signed URLs)
        """
        pass

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if a file was deleted, False if nothing was stored at the key.
            Raises StorageError if the deletion itself fails.
        """
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_unique_filename(self, filename: str) -> str:
        """Generate a unique filename with timestamp and UUID prefix."""
        ext = Path(filename).suffix.lower()
        unique_id = uuid.uuid4().hex[:12]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{timestamp}_{unique_id}{ext}"

    def _resolve(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path not in path.parents:
            raise StorageError(f"Storage key escapes storage root: {storage_key}")
        return path

    @staticmethod
    def _write(path: Path, file_data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        with open(tmp_path, "wb") as f:
            f.write(file_data)
        # Readers never see a half-written file
        tmp_path.replace(path)

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        storage_key = f"{folder}/{self._get_unique_filename(filename)}"
        return await self.save(file_data, storage_key, content_type=content_type)

    async def save(self, file_data: bytes, storage_key: str, content_type: str = "image/jpeg") -> str:
        path = self._resolve(storage_key)
        try:
            await asyncio.to_thread(self._write, path, file_data)
        except OSError as e:
            raise StorageError(f"Failed to write {storage_key}: {e}")
        return storage_key

    async def read(self, storage_key: str) -> bytes:
        path = self._resolve(storage_key)
        return await asyncio.to_thread(path.read_bytes)

    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """For local storage, return a relative path that can be served."""
        if not self._resolve(storage_key).exists():
            raise FileNotFoundError(f"File not found: {storage_key}")
        return f"/static/storage/{storage_key}"

    async def delete(self, storage_key: str) -> bool:
        path = self._resolve(storage_key)
        try:
            await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {storage_key}: {e}")

    async def exists(self, storage_key: str) -> bool:
        return self._resolve(storage_key).exists()


def create_storage(settings) -> IStorage:
    """Build the storage backend for the configured environment."""
    return LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
