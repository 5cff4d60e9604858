from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import quote

from b2sdk.v2 import B2Api, InMemoryAccountInfo
from b2sdk.v2.exception import B2Error

from config import Settings

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """A blob could not be written, removed, or addressed."""


class BlobStore(Protocol):
    def store(self, key: str, data: bytes, content_type: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def public_url(self, key: str) -> str: ...


class B2BlobStore:
    """Blob store backed by a Backblaze B2 bucket."""

    def __init__(self, bucket) -> None:
        self.bucket = bucket

    @classmethod
    def connect(cls, key_id: str, app_key: str, bucket_name: str) -> "B2BlobStore":
        info = InMemoryAccountInfo()
        b2_api = B2Api(info)
        try:
            b2_api.authorize_account("production", key_id, app_key)
            bucket = b2_api.get_bucket_by_name(bucket_name)
        except B2Error as exc:
            raise StorageError(f"could not open bucket {bucket_name!r}: {exc}") from exc
        logger.info("b2 bucket ready bucket=%s", bucket_name)
        return cls(bucket)

    def store(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.bucket.upload_bytes(data, key, content_type=content_type)
        except B2Error as exc:
            raise StorageError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            version = self.bucket.get_file_info_by_name(key)
            self.bucket.delete_file_version(version.id_, key)
        except B2Error as exc:
            raise StorageError(str(exc)) from exc

    def public_url(self, key: str) -> str:
        return self.bucket.get_download_url(key)


class LocalBlobStore:
    """Blob store that keeps files under a directory, for development."""

    def __init__(self, root: Path, *, base_url: str = "/blobs") -> None:
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if not key or relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"invalid storage key {key!r}")
        return self.root.joinpath(*relative.parts)

    def store(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path_for(key)
        if path.exists():
            raise StorageError(f"object already exists: {key}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def read(self, key: str) -> bytes:
        try:
            return self._path_for(key).read_bytes()
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"


def build_blob_store(settings: Settings) -> BlobStore:
    """Pick the storage backend named by the settings."""
    if settings.storage_backend == "b2":
        return B2BlobStore.connect(
            settings.b2_key_id or "",
            settings.b2_app_key or "",
            settings.b2_bucket_name or "",
        )
    settings.local_storage_dir.mkdir(parents=True, exist_ok=True)
    return LocalBlobStore(
        settings.local_storage_dir, base_url=f"{settings.site_url}/blobs"
    )
