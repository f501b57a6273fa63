from __future__ import annotations

import os
from pathlib import Path


def home_dir() -> str:
    return os.environ.get("HOME", "").strip() or str(Path.home())


def expand_user_path(raw: str | None, home: str | None = None) -> str:
    """Strip a ``file://`` scheme and expand a leading ``~``."""
    if not raw:
        return ""
    out = str(raw)
    if out.startswith("file://"):
        out = out[len("file://"):]
    out = out.strip()
    if out == "~":
        return home or home_dir()
    if out.startswith("~/"):
        return (home or home_dir()) + out[1:]
    return out


__all__ = ["expand_user_path", "home_dir"]
