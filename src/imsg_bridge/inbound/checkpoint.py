from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import orjson

from ..logging import get_logger
from ..timestamps import AppleTimestamp

logger = get_logger("imsg_bridge.inbound.checkpoint")

MAX_CHECKPOINT_AGE_SECONDS = 24 * 60 * 60
DEFAULT_LOOKBACK_SECONDS = 30 * 60


class CheckpointStore(Protocol):
    def load(self) -> Optional[AppleTimestamp]:
        ...

    def save(self, value: AppleTimestamp) -> None:
        ...


@dataclass
class JsonCheckpointStore:
    """Persists ``{"lastMessageTime": "<ns>", "updatedAt": "<iso>"}``."""

    path: Path

    def load(self) -> Optional[AppleTimestamp]:
        if not self.path.exists():
            return None
        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            logger.warning("checkpoint_load_failed", path=str(self.path))
            return None
        if not isinstance(data, dict) or not data.get("lastMessageTime"):
            return None
        try:
            return AppleTimestamp.parse(data["lastMessageTime"])
        except ValueError:
            logger.warning("checkpoint_invalid", path=str(self.path), value=data.get("lastMessageTime"))
            return None

    def save(self, value: AppleTimestamp) -> None:
        payload = {
            "lastMessageTime": str(value.ns),
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_bytes(orjson.dumps(payload))
        os.replace(tmp_path, self.path)


def initial_checkpoint(saved: Optional[AppleTimestamp], now: Optional[AppleTimestamp] = None) -> AppleTimestamp:
    """Pick the starting position for the first poll.

    A saved value is honoured only if it falls within the last 24 hours;
    anything older (or in the future) falls back to a 30 minute lookback.
    """
    if now is None:
        now = AppleTimestamp.now()
    if saved is not None and now.minus_seconds(MAX_CHECKPOINT_AGE_SECONDS) < saved < now:
        return saved
    return now.minus_seconds(DEFAULT_LOOKBACK_SECONDS).clamp_non_negative()


def restore_checkpoint(store: CheckpointStore, now: Optional[AppleTimestamp] = None) -> AppleTimestamp:
    saved = store.load()
    value = initial_checkpoint(saved, now)
    if saved is not None and value == saved:
        logger.info("checkpoint_restored", last_message_time=str(value))
    else:
        logger.info("checkpoint_default_lookback", last_message_time=str(value), discarded=str(saved) if saved else None)
    return value


__all__ = [
    "CheckpointStore",
    "DEFAULT_LOOKBACK_SECONDS",
    "JsonCheckpointStore",
    "MAX_CHECKPOINT_AGE_SECONDS",
    "initial_checkpoint",
    "restore_checkpoint",
]
