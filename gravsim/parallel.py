"""
Fork-join execution over disjoint body-index batches.

Every phase of a tick (force evaluation, each integration stage) is split into
[start, end) ranges that never overlap, submitted to a thread pool, and joined
before the next phase starts. The numba kernels release the GIL, so batches
run concurrently; numpy slice updates release it for the bulk arithmetic.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

BatchFn = Callable[[int, int], None]


def batch_ranges(n: int, batch_size: int) -> List[Tuple[int, int]]:
    """Split [0, n) into consecutive non-overlapping ranges of at most batch_size."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [(start, min(start + batch_size, n)) for start in range(0, n, batch_size)]


class WorkerPool:
    """
    Thread pool with an explicit barrier per phase.

    Attributes:
        enabled: when False every batch runs inline in the calling thread
        batch_size: bodies per batch
        max_workers: pool size (default: CPU count)
    """

    def __init__(self, enabled: bool = True, batch_size: int = 32, max_workers: Optional[int] = None):
        self.enabled = enabled
        self.batch_size = batch_size
        self.max_workers = max_workers or os.cpu_count() or 1
        self._executor: Optional[ThreadPoolExecutor] = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix="gravsim-worker")
        return self._executor

    def run(self, fn: BatchFn, n: int) -> None:
        """
        Run fn(start, end) over every batch of [0, n) and wait for all of them.

        The first worker exception is re-raised after the barrier.
        """
        ranges = batch_ranges(n, self.batch_size)
        if not self.enabled or self.max_workers == 1 or len(ranges) <= 1:
            for start, end in ranges:
                fn(start, end)
            return

        executor = self._get_executor()
        futures = [executor.submit(fn, start, end) for start, end in ranges]

        # Barrier: join everything before surfacing any failure
        errors = [f.exception() for f in futures]
        for error in errors:
            if error is not None:
                raise error

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return (f"WorkerPool(enabled={self.enabled}, batch_size={self.batch_size}, "
                f"max_workers={self.max_workers})")
