from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

TRUTHY_VALUES = ("1", "true", "yes", "y", "on")
DEFAULT_STAGING_TTL_HOURS = 24
DEFAULT_POLL_INTERVAL_SECONDS = 2.0


def _expand(raw: str) -> Path:
    return Path(raw).expanduser()


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in TRUTHY_VALUES


def _env_positive_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_float(name: str, default: float) -> float:
    """Parse a positive float from the environment, falling back on bad input."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _default_state_dir() -> Path:
    return _expand(os.getenv("IMSG_STATE_DIR", "~/.imsg-bridge")).resolve()


def _default_chat_db() -> Path:
    return _expand(os.getenv("IMSG_CHAT_DB", "~/Library/Messages/chat.db"))


def _path_under_state(env_name: str, *parts: str) -> Path:
    override = os.getenv(env_name, "").strip()
    if override:
        return _expand(override).resolve()
    return _default_state_dir().joinpath(*parts)


def _default_staging_dir() -> Path:
    override = os.getenv("IMSG_STAGING_DIR", "").strip()
    if override:
        return _expand(override)
    return Path.home() / "Pictures" / "IMessageBridgeOutbound"


@dataclass(frozen=True)
class OutboundStagingPolicy:
    """Rules applied to files before they are handed to Messages."""

    sandbox_root: Path
    staging_dir: Path
    allow_arbitrary_paths: bool = False
    max_attachment_bytes: int | None = None
    staging_ttl_seconds: float = DEFAULT_STAGING_TTL_HOURS * 3600


class BridgeSettings(BaseModel):
    """Runtime configuration for the Messages bridge."""

    chat_db_path: Path = Field(default_factory=_default_chat_db)
    state_dir: Path = Field(default_factory=_default_state_dir)
    outbound_dir: Path = Field(default_factory=lambda: _path_under_state("IMSG_OUTBOUND_DIR", "media", "outbound"))
    inbox_dir: Path = Field(default_factory=lambda: _path_under_state("IMSG_INBOX_DIR", "media", "inbox"))
    checkpoint_file: Path = Field(default_factory=lambda: _path_under_state("IMSG_CHECKPOINT_FILE", "poll-state.json"))
    staging_dir: Path = Field(default_factory=_default_staging_dir)
    allow_arbitrary_files: bool = Field(default_factory=lambda: _env_flag("IMSG_ALLOW_ARBITRARY_FILES"))
    max_attachment_bytes: int | None = Field(default_factory=lambda: _env_positive_int("IMSG_MAX_ATTACHMENT_BYTES"))
    staging_ttl_hours: int = Field(
        default_factory=lambda: _env_positive_int("IMSG_STAGE_TTL_HOURS") or DEFAULT_STAGING_TTL_HOURS
    )
    preferred_service: str = Field(default_factory=lambda: os.getenv("IMSG_SERVICE", "auto").strip().lower() or "auto")
    poll_interval: float = Field(
        default_factory=lambda: _env_float("IMSG_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS)
    )
    log_level: str = Field(default_factory=lambda: os.getenv("IMSG_LOG_LEVEL", "INFO"))
    debug: bool = Field(default_factory=lambda: _env_flag("IMSG_DEBUG"))

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level

    def staging_policy(self) -> OutboundStagingPolicy:
        return OutboundStagingPolicy(
            sandbox_root=self.outbound_dir,
            staging_dir=self.staging_dir,
            allow_arbitrary_paths=self.allow_arbitrary_files,
            max_attachment_bytes=self.max_attachment_bytes,
            staging_ttl_seconds=float(self.staging_ttl_hours) * 3600,
        )


@lru_cache(maxsize=1)
def get_settings() -> BridgeSettings:
    return BridgeSettings()


__all__ = ["BridgeSettings", "OutboundStagingPolicy", "get_settings"]
