"""MIME detection for inbound attachments: declared value, extension, then magic bytes."""
from __future__ import annotations

from pathlib import Path

SNIFF_BYTES = 64

EXTENSION_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".svg": "image/svg+xml",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".m4v": "video/x-m4v",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".aac": "audio/aac",
    ".pdf": "application/pdf",
}

HEIC_BRANDS = {"heic", "heix", "hevc", "hevx"}
HEIF_BRANDS = {"mif1", "msf1", "heif"}
MP4_BRANDS = {"isom", "iso2", "mp41", "mp42", "avc1", "dash"}

HEIF_MIME_TYPES = {"image/heic", "image/heif"}


def infer_mime_from_path(path: str | Path | None) -> str | None:
    if not path:
        return None
    return EXTENSION_MIME_TYPES.get(Path(str(path)).suffix.lower())


def _ascii(header: bytes, start: int, end: int) -> str:
    if len(header) < end:
        return ""
    return header[start:end].decode("ascii", errors="replace")


def sniff_mime_from_header(header: bytes) -> str | None:
    if len(header) < 4:
        return None

    if header.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if _ascii(header, 0, 6) in ("GIF87a", "GIF89a"):
        return "image/gif"
    if _ascii(header, 0, 4) == "RIFF" and _ascii(header, 8, 12) == "WEBP":
        return "image/webp"
    if header.startswith(b"%PDF"):
        return "application/pdf"

    # ISO base media file format: the brand atom tells HEIC/HEIF/MP4/QuickTime apart
    if _ascii(header, 4, 8) == "ftyp":
        brand = _ascii(header, 8, 12).lower()
        if brand in HEIC_BRANDS:
            return "image/heic"
        if brand in HEIF_BRANDS:
            return "image/heif"
        if brand == "qt  ":
            return "video/quicktime"
        if brand in MP4_BRANDS:
            return "video/mp4"

    if header.startswith(b"PK\x03\x04"):
        return "application/zip"

    return None


def sniff_mime_from_file(path: str | Path | None) -> str | None:
    """Read at most SNIFF_BYTES from ``path``. Any I/O failure yields None."""
    if not path or not str(path).strip():
        return None
    try:
        with open(path, "rb") as handle:
            header = handle.read(SNIFF_BYTES)
    except OSError:
        return None
    return sniff_mime_from_header(header)


def determine_mime(declared: str | None, path: str | Path | None) -> str | None:
    trimmed = (declared or "").strip()
    if trimmed:
        return trimmed
    return infer_mime_from_path(path) or sniff_mime_from_file(path)


def is_heif_mime(mime_type: str | None) -> bool:
    return (mime_type or "").lower() in HEIF_MIME_TYPES


__all__ = [
    "EXTENSION_MIME_TYPES",
    "determine_mime",
    "infer_mime_from_path",
    "is_heif_mime",
    "sniff_mime_from_file",
    "sniff_mime_from_header",
]
