from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Protocol

from ..logging import get_logger
from ..models import SendParams

logger = get_logger("imsg_bridge.outbound.targets")

CHAT_PREFIX = "chat"
HANDLE_PATTERN = re.compile(r"^[+0-9][0-9 ()-]*$")
MEDIA_PLACEHOLDERS = frozenset(
    {
        "<media:image>",
        "<media:video>",
        "<media:audio>",
        "<media:attachment>",
        "<media:document>",
    }
)


class TargetKind(str, Enum):
    HANDLE = "handle"
    CHAT_ID = "chat_id"
    CHAT_GUID = "chat_guid"
    CHAT_IDENTIFIER = "chat_identifier"


@dataclass(frozen=True)
class SendTarget:
    kind: TargetKind
    value: str

    @property
    def is_handle(self) -> bool:
        return self.kind is TargetKind.HANDLE


class ChatLookupSource(Protocol):
    async def lookup_chat(self, row_id: str):
        ...


def looks_like_chat_id(value: Optional[str]) -> bool:
    v = (value or "").strip()
    if not v:
        return False
    return ";" in v or v.startswith(CHAT_PREFIX)


def looks_like_handle(value: Optional[str]) -> bool:
    v = (value or "").strip()
    if not v:
        return False
    if "@" in v:
        return True
    return bool(HANDLE_PATTERN.match(v))


def is_media_placeholder(text: Optional[str]) -> bool:
    return (text or "").strip().lower() in MEDIA_PLACEHOLDERS


def parse_send_target(params: SendParams) -> Optional[SendTarget]:
    if params.chat_id is not None:
        return SendTarget(TargetKind.CHAT_ID, params.chat_id)
    if params.chat_guid is not None:
        return SendTarget(TargetKind.CHAT_GUID, params.chat_guid)
    if params.chat_identifier is not None:
        return SendTarget(TargetKind.CHAT_IDENTIFIER, params.chat_identifier)
    if params.to is not None:
        return SendTarget(TargetKind.HANDLE, params.to)
    return None


def _identifier_kind(value: str) -> TargetKind:
    if looks_like_handle(value) and not looks_like_chat_id(value):
        return TargetKind.HANDLE
    return TargetKind.CHAT_IDENTIFIER


def reclassify(target: SendTarget) -> SendTarget:
    """Treat a DM-style chat identifier (a bare phone number or email) as a handle."""
    if target.kind is TargetKind.CHAT_IDENTIFIER:
        return replace(target, kind=_identifier_kind(target.value))
    return target


async def resolve_chat_row_id(target: SendTarget, source: ChatLookupSource) -> SendTarget:
    """Swap a numeric store chat id for the chat's stable guid or identifier.

    Best effort: a failed or empty lookup leaves the target unchanged.
    """
    if target.kind is not TargetKind.CHAT_ID or not target.value.isdigit():
        return target
    try:
        mapped = await source.lookup_chat(target.value)
    except Exception as exc:
        logger.info("chat_lookup_failed", chat_id=target.value, error=str(exc))
        return target
    if mapped is None:
        return target
    if mapped.guid and looks_like_chat_id(mapped.guid):
        return SendTarget(TargetKind.CHAT_GUID, mapped.guid)
    if mapped.chat_identifier:
        return SendTarget(_identifier_kind(mapped.chat_identifier), mapped.chat_identifier)
    return target


__all__ = [
    "MEDIA_PLACEHOLDERS",
    "SendTarget",
    "TargetKind",
    "is_media_placeholder",
    "looks_like_chat_id",
    "looks_like_handle",
    "parse_send_target",
    "reclassify",
    "resolve_chat_row_id",
]
