"""Tests for ordered worker batches."""

import threading
import time

import pytest

from elastalign.utils.concurrency import run_batch


class TestRunBatch:

    def test_results_keep_task_order(self):
        def task(i):
            def run():
                time.sleep(0.01 * (5 - i))
                return i * i
            return run

        assert run_batch([task(i) for i in range(5)], max_workers=5) == [0, 1, 4, 9, 16]

    def test_empty_batch(self):
        assert run_batch([], max_workers=4) == []

    def test_worker_count_is_bounded(self):
        active = []
        peak = []
        lock = threading.Lock()

        def run():
            with lock:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.02)
            with lock:
                active.pop()

        run_batch([run] * 8, max_workers=2)
        assert max(peak) <= 2

    def test_first_error_propagates(self):
        def fail():
            raise ValueError("broken task")

        with pytest.raises(ValueError, match="broken task"):
            run_batch([lambda: 1, fail, lambda: 3], max_workers=1)

    def test_cancelled_batch_raises(self):
        calls = []
        with pytest.raises(InterruptedError):
            run_batch([lambda: calls.append(1)] * 3, max_workers=2, cancel_check=lambda: True)
        assert calls == []
