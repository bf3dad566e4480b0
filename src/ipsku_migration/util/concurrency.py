from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
    *,
    thread_name_prefix: str = "ipsku-probe",
) -> List[R]:
    """
    Run func over items on a bounded thread pool; results keep the input order.

    Inputs here are short (one entry per validation port), so they are
    materialized up front. The first worker exception propagates once the work
    that has not started yet is cancelled.
    """
    work = list(items)
    if not work:
        return []
    workers = max(1, min(int(max_workers), len(work)))
    if workers == 1:
        return [func(item) for item in work]

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as executor:
        futures: List[Future[R]] = [executor.submit(func, item) for item in work]
        try:
            return [fut.result() for fut in futures]
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
