# SPDX-License-Identifier: LGPL-3.0-or-later
# liveswap/orchestrator/workers.py
from __future__ import annotations

import concurrent.futures
import logging
from typing import Callable, List, Optional, Sequence, TypeVar

from ..core.logger import Log

T = TypeVar("T")
R = TypeVar("R")


def run_per_disk(
    logger: logging.Logger,
    items: Sequence[T],
    fn: Callable[[T], R],
    *,
    parallel: bool = True,
    max_workers: Optional[int] = None,
    label: str = "disk",
) -> List[R]:
    """
    Run fn(item) for every item on a bounded thread pool and wait for all.

    Results are returned in input order. The first failure cancels every job
    that has not started yet, waits for the running ones (join barrier) and
    is re-raised.
    """
    if not items:
        return []

    workers = len(items) if max_workers is None else max(1, min(int(max_workers), len(items)))
    if not parallel or workers == 1 or len(items) == 1:
        return [fn(item) for item in items]

    Log.trace(logger, "🧵 %s: %d job(s), workers=%d", label, len(items), workers)
    results: List[Optional[R]] = [None] * len(items)

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix=label) as ex:
        futs = {ex.submit(fn, item): i for i, item in enumerate(items)}
        try:
            for fut in concurrent.futures.as_completed(futs):
                results[futs[fut]] = fut.result()
        except BaseException:
            for f in futs:
                f.cancel()
            raise

    return results  # type: ignore[return-value]
