"""Store-native timestamps.

The Messages store records dates as integer nanoseconds since
2001-01-01T00:00:00Z. Everything that compares or persists store
positions goes through :class:`AppleTimestamp` so Unix and Apple epochs
are never mixed.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
APPLE_EPOCH_OFFSET_MS = 978_307_200_000
NS_PER_MS = 1_000_000
NS_PER_SECOND = 1_000_000_000


@dataclass(frozen=True, order=True)
class AppleTimestamp:
    ns: int

    @classmethod
    def from_unix_ms(cls, unix_ms: int) -> "AppleTimestamp":
        return cls((int(unix_ms) - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS)

    @classmethod
    def from_datetime(cls, value: datetime) -> "AppleTimestamp":
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            value = value.replace(tzinfo=timezone.utc)
        delta = value - APPLE_EPOCH
        micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
        return cls(micros * 1_000)

    @classmethod
    def now(cls) -> "AppleTimestamp":
        return cls.from_unix_ms(time.time_ns() // NS_PER_MS)

    @classmethod
    def parse(cls, raw: object) -> "AppleTimestamp":
        """Parse an integer or decimal string. Raises ValueError otherwise."""
        if isinstance(raw, bool):
            raise ValueError(f"not a timestamp: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        return cls(int(str(raw).strip()))

    def to_unix_ms(self) -> int:
        return self.ns // NS_PER_MS + APPLE_EPOCH_OFFSET_MS

    def to_datetime(self) -> datetime:
        return APPLE_EPOCH + timedelta(microseconds=self.ns // 1_000)

    def isoformat(self) -> str:
        return self.to_datetime().isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def minus_seconds(self, seconds: int) -> "AppleTimestamp":
        return AppleTimestamp(self.ns - seconds * NS_PER_SECOND)

    def clamp_non_negative(self) -> "AppleTimestamp":
        return self if self.ns >= 0 else AppleTimestamp(0)

    def __str__(self) -> str:
        return str(self.ns)


__all__ = ["APPLE_EPOCH", "AppleTimestamp", "NS_PER_SECOND"]
