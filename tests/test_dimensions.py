from __future__ import annotations

from io import BytesIO
import logging

import pytest
from PIL import Image

from dimensions import (
    Dimensions,
    ExtractError,
    extract_dimensions,
    probe_dimensions,
    sniff_mime_type,
)


def _png_bytes(width: int, height: int) -> bytes:
    # signature + length(13) + "IHDR" + width + height + bit_depth + color_type + misc + crc
    sig = b"\x89PNG\r\n\x1a\n"
    ihdr = (
        (13).to_bytes(4, "big")
        + b"IHDR"
        + width.to_bytes(4, "big")
        + height.to_bytes(4, "big")
        + b"\x08\x06\x00\x00\x00"
    )
    return sig + ihdr + b"\x00\x00\x00\x00"


def _gif_bytes(width: int, height: int) -> bytes:
    return b"GIF89a" + width.to_bytes(2, "little") + height.to_bytes(2, "little") + b"\xf7\x00\x00"


def _segment(marker: int, payload: bytes) -> bytes:
    return bytes([0xFF, marker]) + (len(payload) + 2).to_bytes(2, "big") + payload


def _sof(marker: int, width: int, height: int) -> bytes:
    payload = (
        b"\x08"
        + height.to_bytes(2, "big")
        + width.to_bytes(2, "big")
        + b"\x03\x01\x11\x00\x02\x11\x00\x03\x11\x00"
    )
    return _segment(marker, payload)


def _jpeg_bytes(*segments: bytes) -> bytes:
    return b"\xff\xd8" + b"".join(segments) + b"\xff\xd9"


def _encode(fmt: str, size: tuple[int, int], **options) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buffer, fmt, **options)
    return buffer.getvalue()


def test_png_dimensions_from_ihdr() -> None:
    assert extract_dimensions(_png_bytes(640, 480)) == Dimensions(640, 480)


def test_png_accepts_full_32_bit_values() -> None:
    assert extract_dimensions(_png_bytes(0x7FFFFFFF, 0xFFFFFFFF)) == (0x7FFFFFFF, 0xFFFFFFFF)


def test_gif_dimensions_are_little_endian() -> None:
    assert extract_dimensions(_gif_bytes(0x0102, 0x0304)) == (0x0102, 0x0304)


def test_one_by_one_gif() -> None:
    data = b"GIF89a" + bytes([0x01, 0x00, 0x01, 0x00]) + b"\x80\x00\x00"
    assert extract_dimensions(data) == Dimensions(1, 1)


def test_baseline_jpeg_scenario() -> None:
    sof = bytes.fromhex("FFC0001108006400C8") + b"\x03\x01\x11\x00\x02\x11\x00\x03\x11\x00"
    data = _jpeg_bytes(_segment(0xE0, b"JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"), sof)
    assert extract_dimensions(data) == Dimensions(width=200, height=100)


@pytest.mark.parametrize("marker", [0xC0, 0xC2])
def test_jpeg_skips_preceding_segments(marker: int) -> None:
    data = _jpeg_bytes(
        _segment(0xE0, b"JFIF\x00" + b"\x00" * 9),
        _segment(0xE1, b"Exif\x00\x00" + bytes(range(256)) * 3),
        _segment(0xDB, b"\x00" + b"\x01" * 64),
        _segment(0xFE, b""),
        _sof(marker, 1920, 1080),
    )
    assert extract_dimensions(data) == Dimensions(1920, 1080)


def test_jpeg_without_sof_reports_not_found() -> None:
    data = _jpeg_bytes(
        _segment(0xE0, b"JFIF\x00" + b"\x00" * 9),
        _segment(0xDB, b"\x00" + b"\x01" * 64),
    )
    # The trailing EOI marker has no length; the scan walks off the end.
    assert extract_dimensions(data[:-2]) is ExtractError.DIMENSIONS_NOT_FOUND


def test_jpeg_sof1_is_not_treated_as_frame_header() -> None:
    data = _jpeg_bytes(_sof(0xC1, 10, 10))
    assert extract_dimensions(data[:-2]) is ExtractError.DIMENSIONS_NOT_FOUND


def test_jpeg_non_marker_byte_is_malformed() -> None:
    data = b"\xff\xd8" + _segment(0xE0, b"\x00" * 4) + b"\x00\x11\x22\x33"
    assert extract_dimensions(data) is ExtractError.MALFORMED_MARKER_CHAIN


def test_jpeg_segment_length_below_two_is_malformed() -> None:
    data = b"\xff\xd8\xff\xe0\x00\x01" + b"\xff" * 16
    assert extract_dimensions(data) is ExtractError.MALFORMED_MARKER_CHAIN


def test_jpeg_truncated_sof_payload() -> None:
    full = _jpeg_bytes(_sof(0xC0, 300, 200))
    sof_start = 2
    for cut in range(sof_start + 2, sof_start + 9):
        assert extract_dimensions(full[:cut]) is ExtractError.TRUNCATED_HEADER


def test_jpeg_segment_length_past_end_is_not_found() -> None:
    data = b"\xff\xd8\xff\xe1\xff\xf0" + b"\x00" * 10
    assert extract_dimensions(data) is ExtractError.DIMENSIONS_NOT_FOUND


def test_bare_jpeg_signature() -> None:
    assert extract_dimensions(b"\xff\xd8\xff") is ExtractError.DIMENSIONS_NOT_FOUND


@pytest.mark.parametrize("length", range(4, 24))
def test_png_shorter_than_ihdr_is_truncated(length: int) -> None:
    assert extract_dimensions(_png_bytes(10, 10)[:length]) is ExtractError.TRUNCATED_HEADER


@pytest.mark.parametrize("length", range(3, 10))
def test_gif_shorter_than_screen_descriptor_is_truncated(length: int) -> None:
    assert extract_dimensions(_gif_bytes(10, 10)[:length]) is ExtractError.TRUNCATED_HEADER


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\xff",
        b"\xff\xd8",
        b"\x89PN",
        b"GI",
        b"RIFF\x24\x00\x00\x00WEBPVP8 ",
        b"BM" + b"\x00" * 30,
        b"<svg xmlns='http://www.w3.org/2000/svg'/>",
        bytes(range(64)),
    ],
)
def test_unrecognised_buffers(data: bytes) -> None:
    assert extract_dimensions(data) is ExtractError.UNSUPPORTED_FORMAT


def test_sniff_mime_type() -> None:
    assert sniff_mime_type(b"\xff\xd8\xff\xe0") == "image/jpeg"
    assert sniff_mime_type(_png_bytes(1, 1)) == "image/png"
    assert sniff_mime_type(_gif_bytes(1, 1)) == "image/gif"
    assert sniff_mime_type(b"\xff\xd8") is None
    assert sniff_mime_type(b"RIFF\x00\x00\x00\x00WEBP") is None
    assert sniff_mime_type(b"") is None


def test_jpeg_signature_wins_over_competing_parsers() -> None:
    # Bytes 6..9 would read as a valid GIF/PNG size if the wrong parser ran.
    data = b"\xff\xd8\xff\x00GIF\x05\x00\x05\x00" + b"\x00" * 20
    assert extract_dimensions(data) is ExtractError.DIMENSIONS_NOT_FOUND


def test_zero_sized_header_is_not_a_dimension() -> None:
    assert extract_dimensions(_gif_bytes(0, 10)) is ExtractError.DIMENSIONS_NOT_FOUND
    assert extract_dimensions(_png_bytes(10, 0)) is ExtractError.DIMENSIONS_NOT_FOUND


def test_accepts_bytearray_and_memoryview() -> None:
    data = _png_bytes(3, 7)
    assert extract_dimensions(bytearray(data)) == (3, 7)
    assert extract_dimensions(memoryview(data)) == (3, 7)


def test_real_encoder_output() -> None:
    assert extract_dimensions(_encode("PNG", (10, 10))) == Dimensions(10, 10)
    assert extract_dimensions(_encode("GIF", (33, 17))) == Dimensions(33, 17)
    assert extract_dimensions(_encode("JPEG", (200, 100))) == Dimensions(200, 100)
    assert extract_dimensions(_encode("JPEG", (64, 48), progressive=True)) == Dimensions(64, 48)


def test_probe_skips_svg_and_non_images() -> None:
    png = _png_bytes(5, 5)
    assert probe_dimensions(png, "image/svg+xml") is None
    assert probe_dimensions(png, "application/octet-stream") is None
    assert probe_dimensions(png, "IMAGE/PNG") == Dimensions(5, 5)


def test_probe_logs_and_swallows_failures(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="dimensions"):
        result = probe_dimensions(b"RIFF....WEBP", "image/webp", filename="cat.webp")
    assert result is None
    assert "reason=unsupported_format" in caplog.text
    assert "cat.webp" in caplog.text
