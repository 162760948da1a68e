# fleet_engine/executor/pool.py
"""Bounded fan-out/join for independent per-node work."""

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from fleet_engine.core.models import NodeOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskResult(Generic[T, R]):
    """Result of one per-node task: either a value or the error it raised."""
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class NodeTaskPool:
    """
    Runs one callable per node with bounded parallelism.

    - A failure in one task never prevents the others from running.
    - With fail_fast, the first failure cancels tasks that have not started.
    - With a deadline, tasks still running when it passes are reported as
      TimeoutError and abandoned (their threads are not joined).
    """

    def __init__(self, max_parallel: int = 4, name: str = "fleet"):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = max_parallel
        self.name = name

    def run(
        self,
        items: Sequence[T],
        fn: Callable[[T], R],
        *,
        key: Callable[[T], str] = str,
        fail_fast: bool = False,
        timeout: Optional[float] = None,
        on_result: Optional[Callable[[TaskResult], None]] = None,
    ) -> List[TaskResult]:
        """
        Execute fn(item) for every item; results come back in item order.

        Args:
            items: Work items (usually nodes)
            fn: Per-item callable
            key: Label for logging
            fail_fast: Cancel not-yet-started items after the first failure
            timeout: Overall deadline in seconds (None = wait for all)
            on_result: Called on the calling thread as each result arrives
        """
        results: Dict[int, TaskResult] = {}
        if not items:
            return []

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_parallel, len(items)),
            thread_name_prefix=self.name,
        )
        # Items are submitted only as slots free up, so a fail-fast abort
        # never races a worker thread picking up queued work.
        backlog = iter(enumerate(items))
        futures: Dict[Future, int] = {}
        pending = set()
        deadline = None if timeout is None else monotonic() + timeout
        aborted = False

        def submit_next() -> bool:
            for i, item in backlog:
                future = executor.submit(fn, item)
                futures[future] = i
                pending.add(future)
                return True
            return False

        try:
            while len(pending) < self.max_parallel and submit_next():
                pass

            while pending:
                remaining = None if deadline is None else max(0.0, deadline - monotonic())
                done, _ = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)

                if not done:
                    break

                for future in done:
                    pending.discard(future)
                    i = futures[future]
                    error = future.exception()
                    result = TaskResult(items[i], value=None if error else future.result(), error=error)
                    results[i] = result

                    if error is not None:
                        logger.warning(f"[{key(items[i])}] ❌ {type(error).__name__}: {error}")
                    if on_result:
                        on_result(result)

                    if error is not None and fail_fast:
                        aborted = True

                while not aborted and len(pending) < self.max_parallel and submit_next():
                    pass
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for i, item in enumerate(items):
            if i in results:
                continue
            if aborted:
                results[i] = TaskResult(item, error=CancelledTask(f"{key(item)} cancelled"))
            else:
                results[i] = TaskResult(item, error=TimeoutError(f"{key(item)} timed out after {timeout}s"))
            if on_result:
                on_result(results[i])

        return [results[i] for i in range(len(items))]


class CancelledTask(Exception):
    """Task never started because the run was aborted."""
    pass


def to_outcome(result: TaskResult, name: str, detail: Optional[str] = None) -> NodeOutcome:
    if isinstance(result.error, CancelledTask):
        return NodeOutcome.skipped(name, "run aborted")
    if result.error is not None:
        return NodeOutcome.failure(name, result.error)
    return NodeOutcome.success(name, detail)
