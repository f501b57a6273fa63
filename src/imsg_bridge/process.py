from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Sequence

from .errors import CommandError, CommandTimeoutError
from .logging import get_logger

logger = get_logger("imsg_bridge.process")

CommandRunner = Callable[[Sequence[str], float], Awaitable[str]]


def _truncate_text(value: str | None, limit: int = 512) -> str:
    if not value:
        return ""
    if len(value) <= limit:
        return value
    return value[: limit - 1] + "…"


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def run_command(argv: Sequence[str], timeout: float) -> str:
    """Run ``argv`` without a shell and return its stdout.

    Raises CommandTimeoutError when the deadline passes (the child is
    killed) and CommandError on a missing executable or non-zero exit.
    """
    args = [str(part) for part in argv]
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise CommandError(args, None, str(exc)) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        logger.debug("command_timeout", program=args[0], timeout=timeout)
        raise CommandTimeoutError(args, timeout) from None
    except asyncio.CancelledError:
        _kill(proc)
        raise

    if proc.returncode != 0:
        raise CommandError(
            args,
            proc.returncode,
            _truncate_text(stderr.decode("utf-8", errors="replace")),
        )
    return stdout.decode("utf-8", errors="replace")


__all__ = ["CommandRunner", "run_command"]
