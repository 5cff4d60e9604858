from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import re
import secrets
import time
from dataclasses import dataclass
from email import policy
from email.parser import BytesParser
from typing import Optional

import aiosqlite

from config import Settings
from database import Database
from dimensions import probe_dimensions, sniff_mime_type
from storage import BlobStore, StorageError

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
        "image/bmp",
        "image/tiff",
    }
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class FilePart:
    """One file from a multipart body; ``field`` is None when the name was not sent."""

    field: Optional[str]
    filename: str
    content_type: str
    data: bytes


@dataclass
class UploadResult:
    success: bool
    filename: str
    url: Optional[str] = None
    image_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload: dict = {"success": self.success, "filename": self.filename}
        if self.success:
            payload.update(url=self.url, publicUrl=self.url, imageId=self.image_id)
        else:
            payload["error"] = self.error
        return payload


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def guess_mime_type(filename: str, declared: str = "", data: bytes = b"") -> str:
    """Pick the upload's MIME type.

    A declared image type wins, then the filename extension, then the file
    signature for the formats the dimension reader knows.
    """
    candidate = (declared or "").split(";", 1)[0].strip().lower()
    if candidate.startswith("image/"):
        return candidate
    guessed, _ = mimetypes.guess_type(filename)
    if guessed and guessed.startswith("image/"):
        return guessed
    return sniff_mime_type(data) or "application/octet-stream"


def parse_multipart(body: bytes, content_type: str) -> list[FilePart]:
    """File parts of a ``multipart/form-data`` body, in request order.

    Parts without a filename are form fields and are skipped.
    """
    if not body or "multipart/form-data" not in (content_type or "").lower():
        return []
    header = f"Content-Type: {content_type}\r\nMIME-Version: 1.0\r\n\r\n"
    message = BytesParser(policy=policy.HTTP).parsebytes(
        header.encode("latin-1", errors="replace") + body
    )
    if not message.is_multipart():
        return []
    parts = []
    for part in message.iter_parts():
        filename = part.get_filename()
        if not filename:
            continue
        parts.append(
            FilePart(
                field=part.get_param("name", header="content-disposition"),
                filename=filename,
                content_type=part.get_content_type() if part.get("content-type") else "",
                data=part.get_payload(decode=True) or b"",
            )
        )
    return parts


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class UploadPipeline:
    """Validates one file, stores it, and records its metadata."""

    def __init__(self, db: Database, store: BlobStore, settings: Settings) -> None:
        self.db = db
        self.store = store
        self.settings = settings

    def _reject(self, owner_id: int, filename: str, reason: str, error: str) -> UploadResult:
        logger.warning(
            "upload rejected user_id=%s filename=%s reason=%s", owner_id, filename, reason
        )
        return UploadResult(success=False, filename=filename, error=error)

    async def upload(
        self,
        owner_id: int,
        filename: str,
        data: bytes,
        mime_type: str,
        *,
        visibility: str = "public",
    ) -> UploadResult:
        if len(data) > self.settings.max_upload_bytes:
            limit_mb = self.settings.max_upload_bytes // (1024 * 1024)
            return self._reject(
                owner_id, filename, "too_large", f"File size exceeds {limit_mb}MB limit"
            )
        if mime_type not in ALLOWED_MIME_TYPES:
            return self._reject(
                owner_id,
                filename,
                "invalid_type",
                "Invalid file type. Only images are allowed.",
            )

        extension = file_extension(filename)
        sanitized = sanitize_filename(filename)
        storage_key = (
            f"{owner_id}/{int(time.time() * 1000)}-{secrets.token_hex(4)}-{sanitized}"
        )
        logger.info(
            "upload started user_id=%s filename=%s bytes=%s content_type=%s",
            owner_id,
            filename,
            len(data),
            mime_type,
        )

        try:
            await asyncio.to_thread(self.store.store, storage_key, data, mime_type)
        except StorageError as exc:
            logger.error(
                "storage upload failed user_id=%s storage_key=%s error=%s",
                owner_id,
                storage_key,
                exc,
            )
            return UploadResult(
                success=False, filename=filename, error=f"Upload failed: {exc}"
            )

        dimensions = probe_dimensions(data, mime_type, filename=filename)
        try:
            record = await self.db.create_image(
                owner_id=owner_id,
                storage_key=storage_key,
                filename=sanitized,
                extension=extension,
                size_bytes=len(data),
                mime_type=mime_type,
                checksum=checksum(data),
                visibility=visibility,
                width=dimensions.width if dimensions else None,
                height=dimensions.height if dimensions else None,
            )
        except aiosqlite.Error as exc:
            logger.error(
                "database insert failed user_id=%s storage_key=%s error=%s",
                owner_id,
                storage_key,
                exc,
            )
            await self._remove_orphan(storage_key)
            return UploadResult(
                success=False,
                filename=filename,
                error=f"Failed to save image metadata: {exc}",
            )

        url = self.store.public_url(storage_key)
        logger.info(
            "upload completed user_id=%s image_id=%s filename=%s width=%s height=%s",
            owner_id,
            record.id,
            filename,
            record.width,
            record.height,
        )
        return UploadResult(success=True, filename=filename, url=url, image_id=record.id)

    async def _remove_orphan(self, storage_key: str) -> None:
        try:
            await asyncio.to_thread(self.store.delete, storage_key)
        except StorageError:
            logger.exception("orphan cleanup failed storage_key=%s", storage_key)
