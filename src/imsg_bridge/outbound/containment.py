"""Outbound attachment containment.

Unless the policy allows arbitrary paths, a file may only be sent if it
resolves, after following symlinks in every path component, to a regular
file strictly inside the sandbox root. This keeps anyone who can trigger
a send from exfiltrating arbitrary local files through Messages.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path

from ..config import OutboundStagingPolicy
from ..errors import AttachmentPolicyError

OVERRIDE_HINT = "set IMSG_ALLOW_ARBITRARY_FILES=1 to override"


def _is_strictly_inside(path: str, root: str) -> bool:
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


def assert_safe_outbound_file(file_path: str, policy: OutboundStagingPolicy) -> Path:
    """Return the resolved path of an allowed file or raise AttachmentPolicyError."""
    if policy.allow_arbitrary_paths:
        return Path(os.path.abspath(file_path))

    sandbox = os.path.abspath(policy.sandbox_root)
    resolved = os.path.abspath(file_path)
    if not _is_strictly_inside(resolved, sandbox):
        raise AttachmentPolicyError(
            f"Refusing to send attachment outside outbound dir. file={resolved} "
            f"outboundDir={sandbox} ({OVERRIDE_HINT})"
        )

    try:
        real_sandbox = os.path.realpath(sandbox, strict=True)
    except OSError as exc:
        raise AttachmentPolicyError(f"Outbound dir not accessible: {sandbox} ({exc})") from exc
    try:
        real_file = os.path.realpath(resolved, strict=True)
    except OSError as exc:
        raise AttachmentPolicyError(f"Attachment not accessible: {resolved} ({exc})") from exc

    if not _is_strictly_inside(real_file, real_sandbox):
        raise AttachmentPolicyError(
            f"Refusing to send attachment outside outbound dir (realpath). file={real_file} "
            f"outboundDir={real_sandbox} ({OVERRIDE_HINT})"
        )

    try:
        link_info = os.lstat(resolved)
    except OSError as exc:
        raise AttachmentPolicyError(f"Attachment not accessible: {resolved} ({exc})") from exc
    if stat.S_ISLNK(link_info.st_mode):
        raise AttachmentPolicyError(f"Refusing to send symlink attachment: {resolved}")

    try:
        info = os.stat(real_file)
    except OSError as exc:
        raise AttachmentPolicyError(f"Attachment not accessible: {real_file} ({exc})") from exc
    if not stat.S_ISREG(info.st_mode):
        raise AttachmentPolicyError(f"Refusing to send non-file attachment: {real_file}")

    limit = policy.max_attachment_bytes
    if limit and limit > 0 and info.st_size > limit:
        raise AttachmentPolicyError(
            f"Refusing to send attachment larger than {limit} bytes: {real_file} ({info.st_size} bytes)"
        )

    return Path(real_file)


__all__ = ["assert_safe_outbound_file"]
