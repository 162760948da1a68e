"""Test bounded per-node fan-out."""

import threading
import time

import pytest

from fleet_engine.core.errors import TransportFailure
from fleet_engine.core.models import OutcomeStatus
from fleet_engine.executor.pool import CancelledTask, NodeTaskPool, to_outcome


class TestNodeTaskPool:
    """Test NodeTaskPool.run."""

    def test_results_in_item_order(self):
        pool = NodeTaskPool(max_parallel=3)

        results = pool.run([3, 1, 2], lambda n: (time.sleep(n * 0.01), n * 10)[1])

        assert [r.value for r in results] == [30, 10, 20]
        assert all(r.ok for r in results)

    def test_failure_is_isolated(self):
        """Test one failing item does not affect the others."""
        def work(name):
            if name == "worker2":
                raise TransportFailure("unreachable")
            return name.upper()

        results = NodeTaskPool(max_parallel=2).run(["worker1", "worker2", "worker3"], work)

        assert [r.ok for r in results] == [True, False, True]
        assert isinstance(results[1].error, TransportFailure)
        assert results[2].value == "WORKER3"

    def test_parallelism_is_bounded(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def work(_):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        NodeTaskPool(max_parallel=2).run(list(range(6)), work)

        assert peak <= 2

    def test_fail_fast_cancels_pending(self):
        """Test items not yet started are cancelled after the first failure."""
        def work(n):
            if n == 0:
                raise TransportFailure("first node down")
            return n

        results = NodeTaskPool(max_parallel=1).run([0, 1, 2], work, fail_fast=True)

        assert isinstance(results[0].error, TransportFailure)
        assert all(isinstance(r.error, CancelledTask) for r in results[1:])

    def test_deadline_reports_timeout(self):
        gate = threading.Event()

        def work(n):
            if n == 1:
                gate.wait(5)
            return n

        try:
            results = NodeTaskPool(max_parallel=2).run([0, 1], work, timeout=0.2)
        finally:
            gate.set()

        assert results[0].ok
        assert isinstance(results[1].error, TimeoutError)

    def test_on_result_sees_every_item(self):
        seen = []

        NodeTaskPool(max_parallel=2).run(["a", "b", "c"], str.upper, on_result=lambda r: seen.append(r.item))

        assert sorted(seen) == ["a", "b", "c"]

    def test_empty_items(self):
        assert NodeTaskPool().run([], str) == []

    def test_invalid_parallelism(self):
        with pytest.raises(ValueError):
            NodeTaskPool(max_parallel=0)


class TestToOutcome:
    """Test task results become node outcomes."""

    def test_cancelled_is_skipped(self):
        def work(n):
            if n == 0:
                raise TransportFailure("down")
            return n

        results = NodeTaskPool(max_parallel=1).run([0, 1], work, fail_fast=True)

        outcome = to_outcome(results[1], "worker2")

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.describe() == "skipped: run aborted"

    def test_error_is_failed(self):
        def work(n):
            raise TransportFailure("ssh worker@10.0.0.2: No route to host")

        outcome = to_outcome(NodeTaskPool().run([0], work)[0], "worker1")

        assert outcome.describe() == "failed: TransportFailure (ssh worker@10.0.0.2: No route to host)"
