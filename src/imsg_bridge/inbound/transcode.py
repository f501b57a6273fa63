"""HEIC/HEIF to JPEG conversion.

Conversions are cached on disk under a path derived from the attachment
id, so polling the same attachment again never re-runs a converter once
one of them has produced a non-empty JPEG.
"""
from __future__ import annotations

import asyncio
import contextlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Sequence

from PIL import Image
from pillow_heif import register_heif_opener

from ..errors import StrategiesExhaustedError
from ..ladder import Strategy, first_success
from ..logging import get_logger
from ..process import CommandRunner, run_command

register_heif_opener()

logger = get_logger("imsg_bridge.inbound.transcode")

TRANSCODE_TIMEOUT_SECONDS = 30.0
JPEG_QUALITY = 85

# (input_path, output_path, quality) -> None; raises on failure
Transcoder = Callable[[Path, Path, int], Awaitable[None]]


def safe_file_fragment(value: str | None) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", (value or "").strip())
    return cleaned.strip("_")


def converted_output_path(inbox_dir: Path, source: Path, attachment_id: str | None) -> Path:
    fragment = safe_file_fragment(attachment_id) if attachment_id else ""
    if not fragment:
        fragment = safe_file_fragment(source.name)
    return inbox_dir / f"converted-{fragment}.jpg"


def _has_output(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def sips_transcoder(runner: CommandRunner = run_command, timeout: float = TRANSCODE_TIMEOUT_SECONDS) -> Transcoder:
    async def convert(source: Path, output: Path, quality: int) -> None:
        await runner(
            [
                "/usr/bin/sips",
                "-s", "format", "jpeg",
                "-s", "formatOptions", str(quality),
                str(source),
                "--out", str(output),
            ],
            timeout,
        )

    return convert


def magick_transcoder(runner: CommandRunner = run_command, timeout: float = TRANSCODE_TIMEOUT_SECONDS) -> Transcoder:
    async def convert(source: Path, output: Path, quality: int) -> None:
        await runner(
            ["/usr/bin/env", "magick", "convert", str(source), "-quality", str(quality), str(output)],
            timeout,
        )

    return convert


def _pillow_convert(source: Path, output: Path, quality: int) -> None:
    with Image.open(source) as img:
        img.convert("RGB").save(output, format="JPEG", quality=quality)


def pillow_transcoder(timeout: float = TRANSCODE_TIMEOUT_SECONDS) -> Transcoder:
    async def convert(source: Path, output: Path, quality: int) -> None:
        await asyncio.wait_for(asyncio.to_thread(_pillow_convert, source, output, quality), timeout=timeout)

    return convert


def default_transcoders(runner: CommandRunner = run_command) -> List[tuple[str, Transcoder]]:
    return [
        ("sips", sips_transcoder(runner)),
        ("magick", magick_transcoder(runner)),
        ("pillow", pillow_transcoder()),
    ]


@dataclass
class HeicTranscoder:
    """Runs the converter chain against a deterministic output path."""

    inbox_dir: Path
    transcoders: Sequence[tuple[str, Transcoder]] = field(default_factory=default_transcoders)
    quality: int = JPEG_QUALITY

    def _strategy(self, name: str, transcoder: Transcoder, source: Path, output: Path) -> Strategy[Path]:
        async def attempt() -> Path:
            # converters infer the format from the suffix, so the scratch file keeps .jpg
            partial = output.with_name(f"{output.stem}.{name}.partial.jpg")
            try:
                await transcoder(source, partial, self.quality)
                if not _has_output(partial):
                    raise RuntimeError(f"{name} produced no output at {output}")
                os.replace(partial, output)
            finally:
                with contextlib.suppress(OSError):
                    partial.unlink()
            return output

        return Strategy(name=name, attempt=attempt)

    async def convert(self, source: Path, attachment_id: str | None) -> Path | None:
        """Return the JPEG path, or None when every converter failed."""
        output = converted_output_path(self.inbox_dir, source, attachment_id)
        if _has_output(output):
            return output

        try:
            self.inbox_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.debug("inbox_dir_create_failed", path=str(self.inbox_dir), exc_info=True)

        strategies = [self._strategy(name, fn, source, output) for name, fn in self.transcoders]
        try:
            return await first_success(strategies, label="transcode")
        except StrategiesExhaustedError as exc:
            logger.warning(
                "heic_transcode_failed",
                path=str(source),
                attachment_id=attachment_id,
                attempted=exc.attempted,
                error=str(exc.last_error),
            )
            return None


__all__ = [
    "HeicTranscoder",
    "JPEG_QUALITY",
    "Transcoder",
    "converted_output_path",
    "default_transcoders",
    "magick_transcoder",
    "pillow_transcoder",
    "safe_file_fragment",
    "sips_transcoder",
]
