"""Read-only access to the Messages ``chat.db`` store."""
from __future__ import annotations

import asyncio
import plistlib
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ..errors import StoreQueryError
from ..logging import get_logger
from ..timestamps import AppleTimestamp

logger = get_logger("imsg_bridge.inbound.store")

POLL_ROW_LIMIT = 500
QUERY_TIMEOUT_SECONDS = 3.0
LOOKUP_TIMEOUT_SECONDS = 2.0

BASE_COLUMNS = [
    "message.ROWID",
    "COALESCE(message.text, '')",
    "message.attributedBody",
    "message.date",
    "message.is_from_me",
    "handle.id",
    "chat.ROWID",
    "chat.chat_identifier",
    "COALESCE(chat.display_name, '')",
    "COALESCE(message.associated_message_type, 0)",
]
ATTACHMENT_COLUMNS = [
    "COALESCE(attachment.filename, '')",
    "COALESCE(attachment.mime_type, '')",
    "attachment.ROWID",
]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _optional_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _decode_keyed_archive(data: bytes) -> str:
    archive = plistlib.loads(data)
    if not isinstance(archive, dict):
        return ""
    objects = archive.get("$objects")
    if not isinstance(objects, list):
        return ""

    def resolve(value: Any, depth: int = 0) -> Any:
        while isinstance(value, plistlib.UID) or (isinstance(value, dict) and "UID" in value):
            uid = value.data if isinstance(value, plistlib.UID) else value.get("UID")
            if depth > len(objects) or not isinstance(uid, int) or not 0 <= uid < len(objects):
                return None
            value = objects[uid]
            depth += 1
        return value

    for obj in objects:
        if isinstance(obj, dict) and "NS.string" in obj:
            candidate = resolve(obj["NS.string"])
            if isinstance(candidate, str) and candidate.strip("\x00"):
                return candidate.strip("\x00")
    return ""


def _decode_typedstream(data: bytes) -> str:
    # legacy NSArchiver layout: "NSString" marker, 5 header bytes, then a length-prefixed string
    body = data.split(b"NSString", 1)[1][5:]
    if body[0] == 0x81:
        length = int.from_bytes(body[1:3], "little")
        body = body[3 : length + 3]
    else:
        length = body[0]
        body = body[1 : length + 1]
    return body.decode("utf-8")


def decode_attributed_body(blob: Optional[bytes]) -> str:
    """Extract the visible string from a message's ``attributedBody`` column."""

    if not blob:
        return ""
    data = bytes(blob)
    if data.startswith(b"bplist"):
        try:
            return _decode_keyed_archive(data)
        except Exception:  # best effort decoding
            logger.debug("attributed_body_plist_decode_failed", exc_info=True)
            return ""
    if b"NSString" not in data:
        return ""
    try:
        return _decode_typedstream(data)
    except (IndexError, UnicodeDecodeError):
        logger.debug("attributed_body_typedstream_decode_failed")
        return ""


@dataclass(frozen=True)
class StoreRow:
    message_id: str
    text: str
    date: AppleTimestamp
    is_from_me: bool
    sender: str
    chat_id: Optional[str]
    chat_identifier: str
    display_name: str
    associated_type: int
    attachment_filename: str = ""
    attachment_mime_type: str = ""
    attachment_id: Optional[str] = None

    @property
    def is_associated(self) -> bool:
        return self.associated_type != 0


def parse_row(row: Sequence[Any], include_attachments: bool) -> StoreRow:
    """Convert one result tuple into a StoreRow.

    Raises ValueError when the column count does not match the query shape
    or the identity/date columns are unusable.
    """
    expected = len(BASE_COLUMNS) + (len(ATTACHMENT_COLUMNS) if include_attachments else 0)
    if len(row) != expected:
        raise ValueError(f"expected {expected} columns, got {len(row)}")

    (message_id, text, attributed_body, date, is_from_me, sender,
     chat_id, chat_identifier, display_name, associated_type) = row[: len(BASE_COLUMNS)]

    if message_id is None or date is None:
        raise ValueError("row is missing its identity or date")

    body = _text(text)
    if not body:
        body = decode_attributed_body(attributed_body)

    try:
        assoc = int(associated_type or 0)
    except (TypeError, ValueError):
        assoc = 0

    fields = dict(
        message_id=str(message_id),
        text=body,
        date=AppleTimestamp.parse(date),
        is_from_me=bool(is_from_me),
        sender=_text(sender).strip(),
        chat_id=_optional_id(chat_id),
        chat_identifier=_text(chat_identifier),
        display_name=_text(display_name),
        associated_type=assoc,
    )
    if include_attachments:
        filename, mime_type, attachment_id = row[len(BASE_COLUMNS):]
        fields.update(
            attachment_filename=_text(filename),
            attachment_mime_type=_text(mime_type),
            attachment_id=_optional_id(attachment_id),
        )
    return StoreRow(**fields)


def build_poll_query(include_attachments: bool) -> str:
    columns = list(BASE_COLUMNS)
    joins = [
        "FROM message",
        "LEFT JOIN handle ON message.handle_id = handle.ROWID",
        "LEFT JOIN chat_message_join ON message.ROWID = chat_message_join.message_id",
        "LEFT JOIN chat ON chat_message_join.chat_id = chat.ROWID",
    ]
    order_by = "ORDER BY message.date ASC"
    if include_attachments:
        columns.extend(ATTACHMENT_COLUMNS)
        joins.append("LEFT JOIN message_attachment_join ON message.ROWID = message_attachment_join.message_id")
        joins.append("LEFT JOIN attachment ON message_attachment_join.attachment_id = attachment.ROWID")
        order_by = "ORDER BY message.date ASC, attachment.ROWID ASC"

    return " ".join(
        [
            f"SELECT {', '.join(columns)}",
            " ".join(joins),
            "WHERE message.date > ?",
            "AND message.is_from_me = 0",
            "AND message.cache_roomnames IS NULL",
            order_by,
            f"LIMIT {POLL_ROW_LIMIT}",
        ]
    )


@dataclass(frozen=True)
class ChatLookup:
    guid: Optional[str]
    chat_identifier: Optional[str]


class MessageStore:
    """Query surface over chat.db. The store is never written to."""

    def __init__(self, db_path: Path, *, query_timeout: float = QUERY_TIMEOUT_SECONDS) -> None:
        self.db_path = Path(db_path)
        self.query_timeout = query_timeout

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.db_path.expanduser().absolute().as_uri()}?mode=ro"
        return sqlite3.connect(uri, uri=True, timeout=self.query_timeout)

    def _fetch_rows_sync(self, after: AppleTimestamp, include_attachments: bool) -> List[StoreRow]:
        query = build_poll_query(include_attachments)
        conn = self._connect()
        try:
            raw_rows = conn.execute(query, (after.ns,)).fetchall()
        finally:
            conn.close()

        rows: List[StoreRow] = []
        for raw in raw_rows:
            try:
                rows.append(parse_row(raw, include_attachments))
            except ValueError as exc:
                logger.debug("store_row_skipped", error=str(exc))
        return rows

    async def fetch_since(self, after: AppleTimestamp, include_attachments: bool) -> List[StoreRow]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._fetch_rows_sync, after, include_attachments),
                timeout=self.query_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise StoreQueryError(f"store query timed out after {self.query_timeout:g}s") from exc
        except sqlite3.Error as exc:
            raise StoreQueryError(f"store query failed: {exc}") from exc

    def _lookup_chat_sync(self, row_id: int) -> Optional[ChatLookup]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT guid, chat_identifier FROM chat WHERE ROWID = ? LIMIT 1",
                (row_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        guid = _text(row[0]).strip() or None
        identifier = _text(row[1]).strip() or None
        return ChatLookup(guid=guid, chat_identifier=identifier)

    async def lookup_chat(self, row_id: str) -> Optional[ChatLookup]:
        digits = "".join(ch for ch in str(row_id) if ch.isdigit())
        if not digits:
            return None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._lookup_chat_sync, int(digits)),
                timeout=LOOKUP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise StoreQueryError("chat lookup timed out") from exc
        except sqlite3.Error as exc:
            raise StoreQueryError(f"chat lookup failed: {exc}") from exc


__all__ = [
    "ChatLookup",
    "MessageStore",
    "POLL_ROW_LIMIT",
    "StoreRow",
    "build_poll_query",
    "decode_attributed_body",
    "parse_row",
]
