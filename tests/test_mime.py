import pytest

from imsg_bridge.inbound import mime


@pytest.mark.parametrize(
    "header, expected",
    [
        (b"\xff\xd8\xff\xe0" + b"\x00" * 8, "image/jpeg"),
        (b"\x89PNG\r\n\x1a\n" + b"\x00" * 8, "image/png"),
        (b"GIF89a" + b"\x00" * 6, "image/gif"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"%PDF-1.7", "application/pdf"),
        (b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00", "image/heic"),
        (b"\x00\x00\x00\x18ftypmif1\x00\x00\x00\x00", "image/heif"),
        (b"\x00\x00\x00\x14ftypqt  \x00\x00\x00\x00", "video/quicktime"),
        (b"\x00\x00\x00\x20ftypisom\x00\x00\x02\x00", "video/mp4"),
        (b"PK\x03\x04\x14\x00", "application/zip"),
        (b"hello world", None),
        (b"\xff", None),
    ],
)
def test_sniff_mime_from_header(header, expected):
    assert mime.sniff_mime_from_header(header) == expected


def test_declared_mime_wins(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"\xff\xd8\xff\xe0")
    assert mime.determine_mime(" image/heic ", path) == "image/heic"


def test_extension_before_magic_bytes(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"\xff\xd8\xff\xe0")
    assert mime.determine_mime(None, path) == "image/png"


def test_magic_bytes_when_extension_unknown(tmp_path):
    path = tmp_path / "blob"
    path.write_bytes(b"\x00\x00\x00\x18ftypheic" + b"\x00" * 16)
    assert mime.determine_mime("", path) == "image/heic"


def test_unreadable_file_yields_none(tmp_path):
    assert mime.sniff_mime_from_file(tmp_path / "missing") is None
    assert mime.sniff_mime_from_file("") is None
    assert mime.determine_mime(None, tmp_path / "missing.bin") is None


def test_is_heif_mime_is_case_insensitive():
    assert mime.is_heif_mime("IMAGE/HEIC")
    assert mime.is_heif_mime("image/heif")
    assert not mime.is_heif_mime("image/jpeg")
    assert not mime.is_heif_mime(None)
