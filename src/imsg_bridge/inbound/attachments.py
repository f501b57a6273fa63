from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from ..logging import get_logger
from ..models import AttachmentRecord
from ..paths import expand_user_path, home_dir
from .mime import determine_mime, is_heif_mime
from .transcode import HeicTranscoder

logger = get_logger("imsg_bridge.inbound.attachments")


def messages_attachments_dir(home: str | None = None) -> Path:
    return Path(home or home_dir()) / "Library" / "Messages" / "Attachments"


def normalize_attachment_path(raw: str | None, home: str | None = None) -> str:
    """Make a store-reported attachment filename absolute.

    Inbound paths come from the store itself, so no containment check is
    applied here. Relative values are either home-relative ``Library/...``
    paths or relative to the Messages attachment root.
    """
    out = expand_user_path(raw, home)
    if not out:
        return ""
    if os.path.isabs(out):
        return out

    trimmed = out[2:] if out.startswith(("./", ".\\")) else out
    if trimmed.startswith(("Library/", "Library\\")):
        return os.path.join(home or home_dir(), trimmed)
    return os.path.normpath(os.path.join(messages_attachments_dir(home), trimmed))


def _is_missing(path: str) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return True
    except OSError:
        # present but unreadable counts as present; Messages owns its permissions
        return False
    return False


def _inspect(path: str, declared_mime: str | None) -> tuple[bool, str | None]:
    return _is_missing(path), determine_mime(declared_mime, path)


@dataclass
class AttachmentResolver:
    transcoder: HeicTranscoder
    home: str | None = None

    async def resolve(
        self,
        filename: str | None,
        declared_mime: str | None,
        attachment_id: str | None,
    ) -> AttachmentRecord | None:
        path = normalize_attachment_path(filename, self.home)
        if not path:
            return None

        missing, mime_type = await asyncio.to_thread(_inspect, path, declared_mime)
        final_path, final_mime = await self.transcode_heic_if_needed(path, mime_type, attachment_id)

        return AttachmentRecord(
            attachment_id=attachment_id or None,
            original_path=final_path,
            mime_type=final_mime or None,
            missing=missing,
        )

    async def transcode_heic_if_needed(
        self,
        path: str,
        mime_type: str | None,
        attachment_id: str | None,
    ) -> tuple[str, str | None]:
        if not is_heif_mime(mime_type):
            return path, mime_type
        converted = await self.transcoder.convert(Path(path), attachment_id)
        if converted is None:
            return path, mime_type
        logger.debug("heic_transcoded", source=path, output=str(converted), attachment_id=attachment_id)
        return str(converted), "image/jpeg"


__all__ = [
    "AttachmentResolver",
    "messages_attachments_dir",
    "normalize_attachment_path",
]
