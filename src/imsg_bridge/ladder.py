"""Ordered fallback chains.

Both the HEIC transcoder chain and the outbound send ladder are lists of
independent strategies tried in order: the first success wins and the
last failure is kept for reporting when none succeed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, TypeVar

from .errors import StrategiesExhaustedError
from .logging import get_logger

logger = get_logger("imsg_bridge.ladder")

T = TypeVar("T")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    name: str
    attempt: Callable[[], Awaitable[T]]


async def first_success(strategies: Iterable[Strategy[T]], *, label: str = "ladder") -> T:
    attempted: list[str] = []
    last_error: BaseException | None = None
    for strategy in strategies:
        attempted.append(strategy.name)
        try:
            return await strategy.attempt()
        except Exception as exc:
            last_error = exc
            logger.debug(f"{label}_strategy_failed", strategy=strategy.name, error=str(exc))
    raise StrategiesExhaustedError(attempted, last_error)


__all__ = ["Strategy", "first_success"]
