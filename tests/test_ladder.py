import asyncio

import pytest

from imsg_bridge.errors import StrategiesExhaustedError
from imsg_bridge.ladder import Strategy, first_success


def _strategy(name, calls, result=None, error=None):
    async def attempt():
        calls.append(name)
        if error is not None:
            raise error
        return result

    return Strategy(name=name, attempt=attempt)


def test_first_success_stops_at_winner():
    calls = []
    ladder = [
        _strategy("a", calls, error=RuntimeError("a failed")),
        _strategy("b", calls, result="b won"),
        _strategy("c", calls, result="c won"),
    ]
    assert asyncio.run(first_success(ladder)) == "b won"
    assert calls == ["a", "b"]


def test_exhausted_ladder_keeps_last_error():
    calls = []
    last = ValueError("c failed")
    ladder = [
        _strategy("a", calls, error=RuntimeError("a failed")),
        _strategy("b", calls, error=OSError("b failed")),
        _strategy("c", calls, error=last),
    ]
    with pytest.raises(StrategiesExhaustedError) as excinfo:
        asyncio.run(first_success(ladder, label="test"))
    assert excinfo.value.attempted == ["a", "b", "c"]
    assert excinfo.value.last_error is last
    assert "c failed" in str(excinfo.value)


def test_empty_ladder_is_exhausted():
    with pytest.raises(StrategiesExhaustedError):
        asyncio.run(first_success([]))
