from __future__ import annotations

import time
from typing import Iterable

import pytest

from ipsku_migration.util.concurrency import parallel_map_ordered


def test_parallel_map_ordered_preserves_order() -> None:
    def _slow_first(x: int) -> int:
        if x == 0:
            time.sleep(0.05)
        return x * 2

    assert parallel_map_ordered(_slow_first, range(6), max_workers=3) == [0, 2, 4, 6, 8, 10]


def test_parallel_map_ordered_accepts_generators_and_empty_input() -> None:
    def gen() -> Iterable[int]:
        yield from range(4)

    assert parallel_map_ordered(lambda x: x + 1, gen(), max_workers=8) == [1, 2, 3, 4]
    assert parallel_map_ordered(lambda x: x, [], max_workers=2) == []


def test_parallel_map_ordered_propagates_worker_errors() -> None:
    def _boom(x: int) -> int:
        if x == 2:
            raise RuntimeError("probe crashed")
        return x

    with pytest.raises(RuntimeError, match="probe crashed"):
        parallel_map_ordered(_boom, [1, 2, 3], max_workers=2)
