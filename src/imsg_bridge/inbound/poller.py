"""Inbound poll engine.

Each tick reads rows newer than the checkpoint, folds them into one
record per message, resolves attachments and hands every record that
has not been emitted before to the ``on_message`` callback.

Checkpoint advancement and dedup are independent: the
checkpoint moves past every row the tick saw, while the seen-id set
alone decides whether a record is emitted.
"""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from ..errors import StoreQueryError
from ..logging import get_logger
from ..models import AttachmentRecord, MessageRecord
from ..timestamps import AppleTimestamp
from .attachments import AttachmentResolver
from .checkpoint import CheckpointStore
from .store import StoreRow

logger = get_logger("imsg_bridge.inbound.poller")

SEEN_CAPACITY = 2000
SEEN_RETAIN = 1500
CHAT_PREFIX = "chat"
OBJECT_REPLACEMENT_CHAR = "\ufffc"


class RowSource(Protocol):
    async def fetch_since(self, after: AppleTimestamp, include_attachments: bool) -> List[StoreRow]:
        ...


class SeenIdSet:
    """Insertion-ordered id set that trims itself to the newest entries."""

    def __init__(self, capacity: int = SEEN_CAPACITY, retain: int = SEEN_RETAIN) -> None:
        self.capacity = capacity
        self.retain = retain
        self._ids: Dict[str, None] = {}

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> None:
        self._ids[message_id] = None
        if len(self._ids) > self.capacity:
            keep = list(self._ids)[-self.retain:]
            self._ids = dict.fromkeys(keep)


@dataclass
class PollState:
    last_seen: AppleTimestamp
    seen: SeenIdSet = field(default_factory=SeenIdSet)


@dataclass
class TickResult:
    rows: int = 0
    emitted: List[MessageRecord] = field(default_factory=list)
    duplicates: int = 0
    advanced: bool = False


def is_probably_group(chat_identifier: Optional[str], display_name: Optional[str]) -> bool:
    if (display_name or "").strip():
        return True
    return (chat_identifier or "").strip().startswith(CHAT_PREFIX)


def sanitize_inbound_text(text: Optional[str], has_attachments: bool) -> str:
    raw = text or ""
    if not raw or not has_attachments:
        return raw
    # Messages puts U+FFFC in the body where an attachment sits
    return raw.replace(OBJECT_REPLACEMENT_CHAR, "").strip()


@dataclass
class _PendingMessage:
    first: StoreRow
    text: str
    attachments: List[AttachmentRecord] = field(default_factory=list)

    def has_attachment(self, attachment_id: Optional[str]) -> bool:
        if attachment_id is None:
            return False
        return any(att.attachment_id == attachment_id for att in self.attachments)

    def build(self) -> MessageRecord:
        row = self.first
        attachments = sorted(self.attachments, key=_attachment_sort_key)
        return MessageRecord(
            id=int(row.message_id),
            text=sanitize_inbound_text(self.text, bool(attachments)),
            sender=row.sender,
            chat_id=int(row.chat_id) if row.chat_id and row.chat_id.isdigit() else None,
            chat_identifier=row.chat_identifier or None,
            chat_name=row.display_name or None,
            is_group=is_probably_group(row.chat_identifier, row.display_name),
            is_from_me=False,
            created_at=row.date.isoformat(),
            date=str(row.date.ns),
            attachments=attachments,
        )


def _attachment_sort_key(attachment: AttachmentRecord) -> tuple[int, int]:
    if attachment.attachment_id and attachment.attachment_id.isdigit():
        return (0, int(attachment.attachment_id))
    return (1, 0)


async def collect_records(
    rows: List[StoreRow],
    resolver: Optional[AttachmentResolver],
    include_attachments: bool,
) -> List[MessageRecord]:
    """Group rows by message identity, ordered by store timestamp."""
    grouped: Dict[str, _PendingMessage] = {}
    for row in rows:
        if row.is_associated:
            continue
        if not row.sender:
            continue
        if not row.message_id.isdigit():
            continue

        pending = grouped.get(row.message_id)
        if pending is None:
            pending = grouped[row.message_id] = _PendingMessage(first=row, text=row.text)
        elif not pending.text and row.text:
            pending.text = row.text

        if not (include_attachments and resolver and row.attachment_filename):
            continue
        if pending.has_attachment(row.attachment_id):
            continue
        record = await resolver.resolve(row.attachment_filename, row.attachment_mime_type, row.attachment_id)
        if record is not None:
            pending.attachments.append(record)

    ordered = sorted(grouped.values(), key=lambda item: item.first.date)
    return [item.build() for item in ordered]


async def poll_tick(
    state: PollState,
    source: RowSource,
    *,
    resolver: Optional[AttachmentResolver],
    include_attachments: bool,
    on_message: Callable[[MessageRecord], None],
    checkpoints: Optional[CheckpointStore] = None,
) -> TickResult:
    """Run one poll against ``source``, mutating ``state`` in place.

    StoreQueryError propagates; the state is left untouched in that case.
    """
    rows = await source.fetch_since(state.last_seen, include_attachments)
    result = TickResult(rows=len(rows))
    if not rows:
        return result

    max_seen = state.last_seen
    for row in rows:
        if row.date > max_seen:
            max_seen = row.date

    for record in await collect_records(rows, resolver, include_attachments):
        key = str(record.id)
        if key in state.seen:
            result.duplicates += 1
            continue
        state.seen.add(key)
        on_message(record)
        result.emitted.append(record)

    if max_seen > state.last_seen:
        state.last_seen = max_seen
        result.advanced = True
        if checkpoints is not None:
            try:
                await asyncio.to_thread(checkpoints.save, max_seen)
            except OSError as exc:
                logger.warning("checkpoint_save_failed", error=str(exc))

    return result


class Poller:
    """Drives :func:`poll_tick` from a fixed-period timer.

    A timer fire that finds the previous tick still running is skipped.
    """

    def __init__(
        self,
        source: RowSource,
        state: PollState,
        *,
        resolver: Optional[AttachmentResolver],
        on_message: Callable[[MessageRecord], None],
        on_error: Callable[[str], None],
        checkpoints: Optional[CheckpointStore] = None,
        interval: float = 2.0,
    ) -> None:
        self.source = source
        self.state = state
        self.resolver = resolver
        self.on_message = on_message
        self.on_error = on_error
        self.checkpoints = checkpoints
        self.interval = interval
        self.include_attachments = False
        self._timer: Optional[asyncio.Task[None]] = None
        self._tick: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self._timer is not None:
            return
        logger.info("poller_started", interval=self.interval, last_seen=str(self.state.last_seen))
        self._timer = asyncio.create_task(self._timer_loop())

    def stop(self) -> None:
        for task in (self._timer, self._tick):
            if task is not None and not task.done():
                task.cancel()
        if self._timer is not None:
            logger.info("poller_stopped")
        self._timer = None
        self._tick = None

    async def aclose(self) -> None:
        pending = [task for task in (self._timer, self._tick) if task is not None]
        self.stop()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _timer_loop(self) -> None:
        while True:
            self._fire()
            await asyncio.sleep(self.interval)

    def _fire(self) -> None:
        if self._tick is not None and not self._tick.done():
            logger.debug("poll_tick_skipped_in_flight")
            return
        self._tick = asyncio.create_task(self.tick_once())

    async def tick_once(self) -> Optional[TickResult]:
        try:
            result = await poll_tick(
                self.state,
                self.source,
                resolver=self.resolver,
                include_attachments=self.include_attachments,
                on_message=self.on_message,
                checkpoints=self.checkpoints,
            )
        except StoreQueryError as exc:
            logger.warning("poll_query_failed", error=str(exc))
            self.on_error(str(exc))
            return None
        except Exception as exc:
            logger.exception("poll_tick_failed", error=str(exc))
            self.on_error(str(exc))
            return None

        logger.debug(
            "poll_tick_complete",
            rows=result.rows,
            emitted=len(result.emitted),
            duplicates=result.duplicates,
            last_seen=str(self.state.last_seen),
            seen_ids=len(self.state.seen),
        )
        return result


__all__ = [
    "PollState",
    "Poller",
    "SeenIdSet",
    "TickResult",
    "collect_records",
    "is_probably_group",
    "poll_tick",
    "sanitize_inbound_text",
]
