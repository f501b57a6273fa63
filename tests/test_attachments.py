import asyncio
import threading
from pathlib import Path

import pytest
from PIL import Image

from imsg_bridge.inbound import attachments as attachments_module
from imsg_bridge.inbound.attachments import AttachmentResolver, normalize_attachment_path
from imsg_bridge.inbound.transcode import HeicTranscoder, converted_output_path, pillow_transcoder

HOME = "/Users/alice"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("/var/tmp/a.jpg", "/var/tmp/a.jpg"),
        ("~/Library/Messages/Attachments/ab/IMG_1.HEIC", f"{HOME}/Library/Messages/Attachments/ab/IMG_1.HEIC"),
        ("Library/Messages/Attachments/x.png", f"{HOME}/Library/Messages/Attachments/x.png"),
        ("./ab/cd/IMG_2.PNG", f"{HOME}/Library/Messages/Attachments/ab/cd/IMG_2.PNG"),
        ("ab/../cd/x.png", f"{HOME}/Library/Messages/Attachments/cd/x.png"),
        ("file:///var/tmp/b.png", "/var/tmp/b.png"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_attachment_path(raw, expected):
    assert normalize_attachment_path(raw, HOME) == expected


def test_converted_output_path_uses_safe_attachment_id(tmp_path):
    assert converted_output_path(tmp_path, Path("/x/IMG.HEIC"), "a/b c") == tmp_path / "converted-a_b_c.jpg"
    assert converted_output_path(tmp_path, Path("/x/IMG_1.HEIC"), None) == tmp_path / "converted-IMG_1.HEIC.jpg"


class RecordingTranscoder:
    def __init__(self, payload: bytes = b"jpeg-bytes", error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls = []

    async def __call__(self, source: Path, output: Path, quality: int) -> None:
        self.calls.append((source, output, quality))
        if self.error is not None:
            raise self.error
        output.write_bytes(self.payload)


def test_transcoder_chain_falls_through_to_first_success(tmp_path):
    failing = RecordingTranscoder(error=RuntimeError("sips missing"))
    empty = RecordingTranscoder(payload=b"")
    working = RecordingTranscoder()
    transcoder = HeicTranscoder(
        tmp_path / "inbox",
        [("one", failing), ("two", empty), ("three", working)],
    )
    source = tmp_path / "IMG.HEIC"
    source.write_bytes(b"heic")

    result = asyncio.run(transcoder.convert(source, "77"))

    assert result == tmp_path / "inbox" / "converted-77.jpg"
    assert result.read_bytes() == b"jpeg-bytes"
    assert len(failing.calls) == len(empty.calls) == len(working.calls) == 1
    assert working.calls[0][2] == 85


def test_existing_conversion_is_reused(tmp_path):
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    (inbox / "converted-5.jpg").write_bytes(b"done")
    working = RecordingTranscoder()
    transcoder = HeicTranscoder(inbox, [("only", working)])

    result = asyncio.run(transcoder.convert(tmp_path / "IMG.HEIC", "5"))

    assert result == inbox / "converted-5.jpg"
    assert working.calls == []


def test_all_transcoders_failing_returns_none(tmp_path):
    transcoder = HeicTranscoder(
        tmp_path / "inbox",
        [("a", RecordingTranscoder(error=RuntimeError("a"))), ("b", RecordingTranscoder(error=OSError("b")))],
    )
    assert asyncio.run(transcoder.convert(tmp_path / "IMG.HEIC", "9")) is None


class PartialTranscoder:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, source: Path, output: Path, quality: int) -> None:
        self.calls += 1
        output.write_bytes(b"\xff\xd8partial")
        raise asyncio.TimeoutError


def test_interrupted_conversion_is_not_cached(tmp_path):
    inbox = tmp_path / "inbox"
    interrupted = PartialTranscoder()
    transcoder = HeicTranscoder(inbox, [("sips", interrupted)])
    source = tmp_path / "IMG.HEIC"
    source.write_bytes(b"heic")

    assert asyncio.run(transcoder.convert(source, "42")) is None
    assert list(inbox.iterdir()) == []

    assert asyncio.run(transcoder.convert(source, "42")) is None
    assert interrupted.calls == 2


def test_pillow_transcoder_writes_jpeg(tmp_path):
    source = tmp_path / "in.png"
    Image.new("RGBA", (4, 4), (255, 0, 0, 128)).save(source)
    output = tmp_path / "out.jpg"

    asyncio.run(pillow_transcoder()(source, output, 85))

    with Image.open(output) as img:
        assert img.format == "JPEG"
        assert img.size == (4, 4)


def test_resolver_reports_png_as_is(tmp_path):
    png = tmp_path / "a.png"
    png.write_bytes(b"\x89PNG\r\n\x1a\n")
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", []), home=str(tmp_path))

    record = asyncio.run(resolver.resolve(str(png), "", "3"))

    assert record.original_path == str(png)
    assert record.mime_type == "image/png"
    assert record.attachment_id == "3"
    assert record.missing is False


def test_resolver_flags_missing_files(tmp_path):
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", []), home=str(tmp_path))

    record = asyncio.run(resolver.resolve("Library/Messages/Attachments/gone.mov", None, None))

    assert record.original_path == str(tmp_path / "Library/Messages/Attachments/gone.mov")
    assert record.mime_type == "video/quicktime"
    assert record.attachment_id is None
    assert record.missing is True
    assert "attachment_id" not in record.model_dump(exclude_none=True)


def test_resolver_rewrites_heic_to_jpeg(tmp_path):
    heic = tmp_path / "IMG_9.HEIC"
    heic.write_bytes(b"heic")
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", [("fake", RecordingTranscoder())]))

    record = asyncio.run(resolver.resolve(str(heic), "image/heic", "9"))

    assert record.original_path == str(tmp_path / "inbox" / "converted-9.jpg")
    assert record.mime_type == "image/jpeg"


def test_resolver_keeps_heic_when_conversion_fails(tmp_path):
    heic = tmp_path / "IMG_9.HEIC"
    heic.write_bytes(b"heic")
    failing = RecordingTranscoder(error=RuntimeError("nope"))
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", [("fake", failing)]))

    record = asyncio.run(resolver.resolve(str(heic), "image/heic", "9"))

    assert record.original_path == str(heic)
    assert record.mime_type == "image/heic"


def test_resolver_ignores_empty_filenames(tmp_path):
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", []))
    assert asyncio.run(resolver.resolve("", "image/png", "1")) is None


def test_resolver_reads_the_file_off_the_event_loop(tmp_path, monkeypatch):
    png = tmp_path / "a.png"
    png.write_bytes(b"\x89PNG\r\n\x1a\n")
    sniff_threads = []
    real_determine_mime = attachments_module.determine_mime

    def recording_determine_mime(declared, path):
        sniff_threads.append(threading.get_ident())
        return real_determine_mime(declared, path)

    monkeypatch.setattr(attachments_module, "determine_mime", recording_determine_mime)
    resolver = AttachmentResolver(HeicTranscoder(tmp_path / "inbox", []))

    record = asyncio.run(resolver.resolve(str(png), None, "4"))

    assert record.mime_type == "image/png"
    assert sniff_threads and threading.get_ident() not in sniff_threads
