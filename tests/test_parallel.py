"""
Tests for batch splitting and the worker pool barrier.
"""

import threading
import unittest
import numpy as np
from gravsim.parallel import WorkerPool, batch_ranges


class TestBatchRanges(unittest.TestCase):

    def test_ranges_cover_without_overlap(self):
        self.assertEqual(batch_ranges(10, 4), [(0, 4), (4, 8), (8, 10)])
        self.assertEqual(batch_ranges(8, 4), [(0, 4), (4, 8)])
        self.assertEqual(batch_ranges(0, 4), [])

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            batch_ranges(10, 0)


class TestWorkerPool(unittest.TestCase):

    def test_every_index_written_once(self):
        """Disjoint batches: each index is visited exactly once"""
        counts = np.zeros(103, dtype=np.int64)

        def fn(start, end):
            counts[start:end] += 1

        with WorkerPool(enabled=True, batch_size=8, max_workers=4) as pool:
            pool.run(fn, len(counts))

        np.testing.assert_array_equal(counts, np.ones(103, dtype=np.int64))

    def test_disabled_pool_runs_inline(self):
        threads = set()

        def fn(start, end):
            threads.add(threading.get_ident())

        pool = WorkerPool(enabled=False, batch_size=2)
        pool.run(fn, 10)

        self.assertEqual(threads, {threading.get_ident()})

    def test_single_batch_runs_inline(self):
        threads = set()

        def fn(start, end):
            threads.add(threading.get_ident())

        with WorkerPool(enabled=True, batch_size=32, max_workers=4) as pool:
            pool.run(fn, 20)

        self.assertEqual(threads, {threading.get_ident()})

    def test_worker_error_raised_after_barrier(self):
        """A failing batch does not stop the others; its error surfaces after all joined"""
        visited = []
        lock = threading.Lock()

        def fn(start, end):
            if start == 0:
                raise RuntimeError("batch failed")
            with lock:
                visited.append(start)

        with WorkerPool(enabled=True, batch_size=5, max_workers=3) as pool:
            with self.assertRaises(RuntimeError):
                pool.run(fn, 20)

        self.assertEqual(sorted(visited), [5, 10, 15])

    def test_close_is_idempotent(self):
        pool = WorkerPool(enabled=True, batch_size=1, max_workers=2)
        pool.run(lambda start, end: None, 4)
        pool.close()
        pool.close()


if __name__ == '__main__':
    unittest.main()
