"""Copy outbound files somewhere Messages is allowed to read.

The Messages agent is sandboxed and can read user media folders such as
``~/Pictures`` but not the host's private state directory, so each file
is copied to a staging folder under a random name before sending.
"""
from __future__ import annotations

import os
import secrets
import shutil
import time
from pathlib import Path

from ..logging import get_logger

logger = get_logger("imsg_bridge.outbound.staging")

STAGED_PREFIX = "imsg-bridge-"
MAX_EXTENSION_LENGTH = 12


def staged_name(source: Path, now_ms: int | None = None) -> str:
    ext = source.suffix
    if len(ext) > MAX_EXTENSION_LENGTH:
        ext = ""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"{STAGED_PREFIX}{now_ms}-{secrets.token_hex(6)}{ext}"


def sweep_staged_files(staging_dir: Path, ttl_seconds: float, now: float | None = None) -> int:
    """Delete staged copies older than ``ttl_seconds``. Returns the number removed."""
    if now is None:
        now = time.time()
    removed = 0
    try:
        entries = list(os.scandir(staging_dir))
    except OSError:
        return 0
    for entry in entries:
        if not entry.name.startswith(STAGED_PREFIX):
            continue
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            if now - entry.stat(follow_symlinks=False).st_mtime <= ttl_seconds:
                continue
            os.unlink(entry.path)
            removed += 1
        except OSError:
            logger.debug("staged_file_cleanup_failed", path=entry.path)
    if removed:
        logger.debug("staged_files_swept", removed=removed, staging_dir=str(staging_dir))
    return removed


def stage_attachment(source: Path, staging_dir: Path) -> Path:
    """Copy ``source`` into ``staging_dir`` under a random name."""
    staging_dir.mkdir(parents=True, exist_ok=True)
    target = staging_dir / staged_name(source)
    shutil.copyfile(source, target)
    try:
        os.chmod(target, 0o600)
    except OSError:
        logger.debug("staged_file_chmod_failed", path=str(target))
    return target


__all__ = ["STAGED_PREFIX", "stage_attachment", "staged_name", "sweep_staged_files"]
