from __future__ import annotations

import enum
import logging
from typing import NamedTuple, Optional, Union

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

JPEG_SIGNATURE = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG"
GIF_SIGNATURE = b"GIF"

PNG_MIN_LENGTH = 24
GIF_MIN_LENGTH = 10

# Baseline and progressive start-of-frame markers.
SOF_MARKERS = frozenset({0xC0, 0xC2})

_FORMATS = (
    (JPEG_SIGNATURE, "image/jpeg"),
    (PNG_SIGNATURE, "image/png"),
    (GIF_SIGNATURE, "image/gif"),
)


class Dimensions(NamedTuple):
    width: int
    height: int


class ExtractError(str, enum.Enum):
    """Why no dimensions could be read from a buffer."""

    UNSUPPORTED_FORMAT = "unsupported_format"
    TRUNCATED_HEADER = "truncated_header"
    MALFORMED_MARKER_CHAIN = "malformed_marker_chain"
    DIMENSIONS_NOT_FOUND = "dimensions_not_found"


ExtractResult = Union[Dimensions, ExtractError]


def _checked(width: int, height: int) -> ExtractResult:
    if width <= 0 or height <= 0:
        return ExtractError.DIMENSIONS_NOT_FOUND
    return Dimensions(width, height)


def _png_dimensions(data: bytes) -> ExtractResult:
    # IHDR always follows the 8-byte signature; width/height are its first fields.
    if len(data) < PNG_MIN_LENGTH:
        return ExtractError.TRUNCATED_HEADER
    width = int.from_bytes(data[16:20], "big")
    height = int.from_bytes(data[20:24], "big")
    return _checked(width, height)


def _gif_dimensions(data: bytes) -> ExtractResult:
    if len(data) < GIF_MIN_LENGTH:
        return ExtractError.TRUNCATED_HEADER
    width = int.from_bytes(data[6:8], "little")
    height = int.from_bytes(data[8:10], "little")
    return _checked(width, height)


def _jpeg_dimensions(data: bytes) -> ExtractResult:
    """Walk the marker chain after SOI until a SOF0/SOF2 segment turns up."""
    size = len(data)
    offset = 2
    while offset < size:
        if data[offset] != 0xFF:
            return ExtractError.MALFORMED_MARKER_CHAIN
        if offset + 1 >= size:
            break
        marker = data[offset + 1]
        if marker in SOF_MARKERS:
            # length(2) + precision(1) + height(2) + width(2)
            if offset + 9 > size:
                return ExtractError.TRUNCATED_HEADER
            height = int.from_bytes(data[offset + 5 : offset + 7], "big")
            width = int.from_bytes(data[offset + 7 : offset + 9], "big")
            return _checked(width, height)
        if offset + 4 > size:
            break
        segment_length = int.from_bytes(data[offset + 2 : offset + 4], "big")
        if segment_length < 2:
            return ExtractError.MALFORMED_MARKER_CHAIN
        next_offset = offset + segment_length + 2
        if next_offset <= offset:
            return ExtractError.MALFORMED_MARKER_CHAIN
        offset = next_offset
    return ExtractError.DIMENSIONS_NOT_FOUND


def sniff_mime_type(buffer: bytes) -> Optional[str]:
    """MIME type of the first signature ``buffer`` starts with, if any."""
    for signature, mime_type in _FORMATS:
        if buffer[: len(signature)] == signature:
            return mime_type
    return None


def extract_dimensions(buffer: bytes) -> ExtractResult:
    """Sniff the container format of ``buffer`` and read its pixel size.

    Returns a :class:`Dimensions` on success or the :class:`ExtractError`
    describing why the size could not be determined. Never raises for any
    input and never reads past the end of the buffer.
    """
    mime_type = sniff_mime_type(buffer)
    if mime_type == "image/jpeg":
        return _jpeg_dimensions(buffer)
    if mime_type == "image/png":
        return _png_dimensions(buffer)
    if mime_type == "image/gif":
        return _gif_dimensions(buffer)
    return ExtractError.UNSUPPORTED_FORMAT


def probe_dimensions(
    buffer: bytes,
    mime_type: str,
    *,
    filename: str = "",
) -> Optional[Dimensions]:
    """Best-effort size lookup used by the upload handlers.

    Vector and non-image types are skipped without looking at the bytes. Any
    failure is logged and reported as ``None`` so the upload carries on.
    """
    mime = (mime_type or "").strip().lower()
    if not mime.startswith("image/") or mime == "image/svg+xml":
        return None
    try:
        result = extract_dimensions(buffer)
    except Exception:
        logger.exception("dimension probe crashed filename=%s", filename)
        return None
    if isinstance(result, ExtractError):
        logger.warning(
            "could not extract dimensions filename=%s mime_type=%s reason=%s",
            filename,
            mime,
            result.value,
        )
        return None
    return result
