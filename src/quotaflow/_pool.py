"""
FIFO worker pool with a mutable concurrency bound.

The pool dispatches queued tasks, in submission order, to a thread-pool
executor while the number of running tasks stays below the current
concurrency bound. A task keeps its slot until `task_done()` is called,
which is not necessarily when the worker function returns: callback-style
tasks may report completion later, from any thread.

Example:
    >>> pool = WorkerPool(worker=lambda task, callback: task(callback))
    >>> pool.enqueue(my_task, my_callback)
    >>> pool.set_concurrency(10)
    >>> pool.pause()
    >>> pool.resume()
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)

Worker = Callable[[Any, Any], None]


class WorkerPool:
    """
    Single-queue dispatcher whose concurrency can change while it runs.

    Invariants:
        - Tasks are handed to the executor strictly in FIFO order.
        - At most `concurrency` tasks are running at any instant. Shrinking
          the bound never interrupts tasks that are already running; it only
          delays further dispatch until enough of them finish.
        - No user code is invoked while the internal lock is held.

    Args:
        worker: Function invoked on an executor thread as `worker(task, callback)`
            for every dispatched task.
        concurrency: Initial concurrency bound (>= 0, `math.inf` for unbounded).
        max_workers: Number of executor threads, when the pool creates its own executor.
        executor: Optional executor to run workers on (the pool then does not own it).
    """

    def __init__(
        self,
        worker: Worker,
        concurrency: int | float = 1,
        max_workers: int | None = None,
        executor: Executor | None = None,
    ):
        assert worker is not None, "worker cannot be None."
        assert callable(worker), "worker must be callable."
        assert concurrency is not None, "concurrency cannot be None."
        assert concurrency >= 0, "concurrency must be >= 0."
        assert max_workers is None or max_workers > 0, "max_workers must be > 0 or None."

        self._worker = worker
        self._concurrency = concurrency
        self._paused = False
        self._closed = False
        self._running = 0
        self._queue: deque[tuple[Any, Any]] = deque()
        self._lock = threading.Lock()

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="quotaflow-worker",
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def concurrency(self) -> int | float:
        return self._concurrency

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> int:
        """Number of dispatched tasks that have not called `task_done()` yet."""
        return self._running

    @property
    def pending(self) -> int:
        """Number of queued tasks waiting for a free slot."""
        return len(self._queue)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def enqueue(self, task: Any, callback: Any) -> None:
        """
        Append a task to the queue and dispatch it right away if a slot is free.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("cannot enqueue tasks after shutdown")
            self._queue.append((task, callback))
            self._dispatch_locked()

    def set_concurrency(self, concurrency: int | float) -> None:
        """Change the concurrency bound; growing it dispatches queued tasks immediately."""
        assert concurrency is not None, "concurrency cannot be None."
        assert concurrency >= 0, "concurrency must be >= 0."

        with self._lock:
            if concurrency != self._concurrency:
                logger.debug(f"Concurrency changed from {self._concurrency} to {concurrency}")
            self._concurrency = concurrency
            self._dispatch_locked()

    def pause(self) -> None:
        """Stop dispatching queued tasks. Running tasks are allowed to finish."""
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        """Resume dispatching queued tasks."""
        with self._lock:
            self._paused = False
            self._dispatch_locked()

    def task_done(self) -> None:
        """Release the slot held by a finished task and dispatch the next ones."""
        with self._lock:
            assert self._running > 0, "task_done() called more times than tasks were dispatched."
            self._running -= 1
            self._dispatch_locked()

    def shutdown(self, wait: bool = True) -> list[tuple[Any, Any]]:
        """
        Stop accepting tasks and return the ones that were never dispatched.

        Args:
            wait: Whether to wait for workers already handed to the executor.

        Returns:
            The drained `(task, callback)` pairs, in FIFO order.
        """
        with self._lock:
            self._closed = True
            drained = list(self._queue)
            self._queue.clear()

        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        return drained

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _has_free_slot(self) -> bool:
        if math.isinf(self._concurrency):
            return True
        return self._running < self._concurrency

    def _dispatch_locked(self) -> None:
        """
        Hand queued tasks to the executor while slots are free.

        Must be called with the lock held. `Executor.submit` only schedules
        the call, so submitting under the lock keeps dispatch order FIFO
        across threads.
        """
        while self._queue and not self._paused and not self._closed and self._has_free_slot():
            task, callback = self._queue.popleft()
            self._running += 1
            self._executor.submit(self._worker, task, callback)

    def __repr__(self) -> str:
        return (
            f"WorkerPool(concurrency={self._concurrency}, running={self._running}, "
            f"pending={len(self._queue)}, paused={self._paused})"
        )
