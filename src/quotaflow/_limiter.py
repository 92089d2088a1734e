"""
Adaptive, rate-aware task admission.

This module provides the AdaptiveLimiter: a FIFO work queue whose concurrency
bound is recomputed after every completed task from the rate-limit state the
tasks report (e.g. quota headers of an HTTP API).

Control loop ("burst_first" strategy):
    1. After a task completes, `adjusted = remaining - threshold`.
    2. If `adjusted > 1`, the concurrency bound becomes `adjusted`.
    3. Otherwise the queue is paused and a single resume timer is armed for
       the reported reset time. When it fires, the bound becomes
       `limit - threshold` and the queue resumes.

Tasks follow an error-first callback protocol: a task is any callable
accepting a ResponseHandler, which it must call exactly once with
`(error, response)`.

Example:
    >>> from quotaflow import AdaptiveLimiter
    >>> limiter = AdaptiveLimiter(threshold=5)
    >>>
    >>> def fetch(respond):
    ...     response = session.get(url)
    ...     limiter.update_rate_limits(
    ...         limit=response.headers.get("X-RateLimit-Limit"),
    ...         remaining=response.headers.get("X-RateLimit-Remaining"),
    ...         reset_at=response.headers.get("X-RateLimit-Reset"),
    ...     )
    ...     respond(None, response)
    >>>
    >>> future = limiter.submit(fetch)
    >>> response = future.result()
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future
from dataclasses import dataclass, replace
from typing import Any, Self

from quotaflow._config import LimiterConfig
from quotaflow._pool import WorkerPool

logger = logging.getLogger(__name__)

# Bound used until real rate data is known
_INITIAL_CONCURRENCY = 1


# =============================================================================
# Exceptions
# =============================================================================


class QuotaFlowError(Exception):
    """Base exception for errors raised by the limiter itself."""

    pass


class InvalidTaskError(QuotaFlowError, TypeError):
    """
    Raised when a submitted task is not callable.

    The limiter fails the returned future immediately; the task never
    enters the queue nor occupies a worker slot.
    """

    def __init__(self, task: Any):
        self.task = task
        super().__init__(f"request_handler must be callable, got {type(task).__name__}.")


class TaskError(QuotaFlowError):
    """
    Raised when a task reports a failure that is not an exception instance.

    Tasks reporting an exception (e.g. `respond(requests.HTTPError(...), None)`)
    have that exception propagated as-is; any other error value is wrapped
    in a TaskError so that it can be set on the future.

    Attributes:
        error: The error value reported by the task.
    """

    def __init__(self, error: Any):
        self.error = error
        super().__init__(f"Task reported an error: {error!r}")


class LimiterShutdownError(QuotaFlowError):
    """Raised for tasks submitted after shutdown or discarded from the queue by it."""

    pass


# =============================================================================
# Rate State
# =============================================================================


def coerce_rate_value(value: Any) -> float | None:
    """
    Coerce a reported rate value to a float.

    Accepts numbers and numeric strings (e.g. raw header values).

    Returns:
        The coerced value, or None if it is missing, not numeric,
        not finite or negative.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


@dataclass
class RateState:
    """
    Latest rate-limit data reported for the external resource.

    Unbounded fields hold `math.inf`. The limiter owns a single instance and
    only hands out copies (see `AdaptiveLimiter.rate_state`).

    Attributes:
        limit: Maximum requests per quota window.
        remaining: Requests left in the current window.
        reset_at: POSIX timestamp (seconds) at which the window resets.
    """

    limit: float = math.inf
    remaining: float = math.inf
    reset_at: float = 0.0

    @property
    def has_rate_data(self) -> bool:
        """Whether a finite remaining quota has been reported."""
        return math.isfinite(self.remaining)

    def update(
        self,
        limit: Any = None,
        remaining: Any = None,
        reset_at: Any = None,
    ) -> list[str]:
        """
        Apply the reported values that coerce to valid numbers.

        Returns:
            Names of the fields that were applied.
        """
        applied: list[str] = []
        for name, raw in (("limit", limit), ("remaining", remaining), ("reset_at", reset_at)):
            value = coerce_rate_value(raw)
            if value is None:
                if raw is not None:
                    logger.debug(f"Ignoring invalid rate value for '{name}': {raw!r}")
                continue
            setattr(self, name, value)
            applied.append(name)
        return applied


# =============================================================================
# Response Handler
# =============================================================================


class ResponseHandler:
    """
    Completion handle passed to every task.

    Must be called exactly once as `respond(error, response)`. Extra calls
    are ignored and logged. Thread-safe: a task may hand it over to any
    thread and call it there.

    Attributes:
        future: The future settled when the handler is called.
    """

    def __init__(
        self,
        future: Future[Any],
        on_response: Callable[[ResponseHandler, Any, Any], None],
    ):
        self.future = future
        self._on_response = on_response
        self._called = False
        self._lock = threading.Lock()

    @property
    def called(self) -> bool:
        return self._called

    def __call__(self, error: Any = None, response: Any = None) -> None:
        with self._lock:
            if self._called:
                logger.warning("Response handler called more than once. Ignoring the extra call.")
                return
            self._called = True
        self._on_response(self, error, response)


# =============================================================================
# Adaptive Limiter
# =============================================================================


class AdaptiveLimiter:
    """
    Task admission controller driven by rate-limit feedback.

    The limiter starts with a concurrency bound of 1 and only grows it once
    tasks report real rate data through `update_rate_limits()`. When the
    reserved headroom (`threshold`) is reached it pauses dispatching until
    the reported reset time, then resumes with `limit - threshold`.

    THREADING MODEL
    ---------------
    Tasks run on executor threads. Rate state, the concurrency decision and
    the resume timer are guarded by a single lock, so completions arriving
    concurrently cannot lose updates. At most one resume timer is pending:
    arming a new one cancels the previous one, and a timer that fires after
    being superseded does nothing.

    The concurrency bound admits tasks, but a task only runs once an
    executor thread is free. The private executor gets `max_workers`
    threads, else `max_concurrency`, else the ThreadPoolExecutor default of
    min(32, cpu_count + 4). A bound above that count is still reported by
    `in_flight` while the extra tasks wait for a thread. Pass `max_workers`
    or an `executor` sized for the expected bursts.

    Example:
        >>> limiter = AdaptiveLimiter(threshold=5, max_concurrency=20)
        >>> future = limiter.call(requests.get, "https://api.example.com/items")
        >>> future.result().status_code
        200

    Args:
        config: Limiter configuration. Defaults to `QUOTAFLOW.config.limiter`.
        clock: Function returning the current POSIX time in seconds.
        max_workers: Number of executor threads (default: max_concurrency, or
            the ThreadPoolExecutor default of min(32, cpu_count + 4) when unbounded).
        executor: Optional executor to run tasks on instead of a private one.
        **overrides: LimiterConfig fields overriding `config`.

    Raises:
        ConfigValidationError: If the resulting configuration is invalid.
    """

    def __init__(
        self,
        config: LimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        max_workers: int | None = None,
        executor: Executor | None = None,
        **overrides: Any,
    ):
        if config is None:
            from quotaflow._config import QUOTAFLOW
            config = QUOTAFLOW.config.limiter

        assert clock is not None, "clock cannot be None."

        self._config = config.with_overrides(overrides).validate()
        self._clock = clock
        self._lock = threading.Lock()
        self._rate_state = RateState(reset_at=clock())

        # Resume timer (at most one outstanding)
        self._timer: threading.Timer | None = None
        self._timer_generation = 0

        # Known only when the pool owns its executor
        self._worker_threads: int | None = None
        if executor is None:
            self._worker_threads = (
                max_workers or self._config.max_concurrency or min(32, (os.cpu_count() or 1) + 4)
            )

        self._pool = WorkerPool(
            worker=self._run_task,
            concurrency=_INITIAL_CONCURRENCY,
            max_workers=self._worker_threads,
            executor=executor,
        )

    # ------------------------------------------------------------------
    # Configuration and state
    # ------------------------------------------------------------------

    @property
    def config(self) -> LimiterConfig:
        return self._config

    def configure(self, **overrides: Any) -> LimiterConfig:
        """
        Replace this limiter's configuration with a validated copy carrying `overrides`.

        The current concurrency bound is left as is; the new values apply
        from the next completed task.

        Raises:
            ValueError: If overrides contains unknown field names.
            ConfigValidationError: If the resulting configuration is invalid.
        """
        new_config = self._config.with_overrides(overrides).validate()
        with self._lock:
            self._config = new_config
        return new_config

    @property
    def rate_state(self) -> RateState:
        """A copy of the current rate state."""
        with self._lock:
            return replace(self._rate_state)

    @property
    def concurrency(self) -> int | float:
        return self._pool.concurrency

    @property
    def is_paused(self) -> bool:
        return self._pool.paused

    @property
    def in_flight(self) -> int:
        return self._pool.running

    @property
    def pending(self) -> int:
        return self._pool.pending

    @property
    def has_pending_reset(self) -> bool:
        """Whether a resume timer is armed."""
        with self._lock:
            return self._timer is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update_rate_limits(
        self,
        limit: Any = None,
        remaining: Any = None,
        reset_at: Any = None,
    ) -> Self:
        """
        Record the latest rate-limit data reported by the external resource.

        Each value is coerced to a number and applied only if it is a finite,
        non-negative number; anything else leaves the field unchanged. Never raises.

        Args:
            limit: Maximum requests per quota window.
            remaining: Requests left in the current window.
            reset_at: POSIX timestamp (seconds) of the next window reset.

        Returns:
            The limiter itself, for chaining.
        """
        with self._lock:
            self._rate_state.update(limit=limit, remaining=remaining, reset_at=reset_at)
        return self

    def submit(self, request_handler: Callable[[ResponseHandler], Any]) -> Future[Any]:
        """
        Queue a callback-style task and return a future for its response.

        The task is called with a ResponseHandler and must eventually call it
        with `(error, response)`. If the task raises before doing so, the
        exception is reported as its error.

        Args:
            request_handler: Callable accepting a single ResponseHandler argument.

        Returns:
            A future resolved with the response, or failed with the reported error.
            It fails immediately with InvalidTaskError if `request_handler` is not
            callable, and with LimiterShutdownError after shutdown. The future
            cannot be cancelled.
        """
        future: Future[Any] = Future()
        future.set_running_or_notify_cancel()

        if not callable(request_handler):
            future.set_exception(InvalidTaskError(request_handler))
            return future

        handler = ResponseHandler(future, self._on_response)
        try:
            self._pool.enqueue(request_handler, handler)
        except RuntimeError as e:
            future.set_exception(LimiterShutdownError(str(e)))
        return future

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        """
        Queue a plain callable and return a future for its return value.

        Exceptions raised by `fn` fail the future.

        Example:
            >>> future = limiter.call(client.post, url, data={"prompt": "hi"})
        """
        if not callable(fn):
            return self.submit(fn)

        def request_handler(respond: ResponseHandler) -> None:
            respond(None, fn(*args, **kwargs))

        return self.submit(request_handler)

    def shutdown(self, wait: bool = True) -> None:
        """
        Cancel the pending resume timer and stop the worker pool.

        Queued tasks that were never dispatched fail with LimiterShutdownError.

        Args:
            wait: Whether to wait for dispatched tasks' workers to return.
        """
        with self._lock:
            self._cancel_timer_locked()

        discarded = self._pool.shutdown(wait=wait)
        if discarded:
            logger.info(f"Limiter shut down with {len(discarded)} queued task(s) discarded.")
        for _, handler in discarded:
            handler.future.set_exception(
                LimiterShutdownError("Limiter was shut down before the task was dispatched.")
            )

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown(wait=True)

    def __repr__(self) -> str:
        return (
            f"AdaptiveLimiter(strategy={self._config.strategy!r}, threshold={self._config.threshold}, "
            f"concurrency={self.concurrency}, paused={self.is_paused})"
        )

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    def _run_task(self, request_handler: Callable[[ResponseHandler], Any], handler: ResponseHandler) -> None:
        """Run a task on a worker thread, turning a raised exception into its reported error."""
        try:
            request_handler(handler)
        except Exception as e:
            if handler.called:
                logger.warning(
                    f"Task raised after reporting its response: {e!r}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                return
            handler(e, None)

    def _on_response(self, handler: ResponseHandler, error: Any, response: Any) -> None:
        """Completion handling: recompute the bound, settle the future, release the slot."""
        try:
            self._refresh_rate_limits()
            self._adjust_concurrency()
        finally:
            # Settled before the slot is released so futures complete in dispatch order
            try:
                self._settle(handler.future, error, response)
            finally:
                self._pool.task_done()

    @staticmethod
    def _settle(future: Future[Any], error: Any, response: Any) -> None:
        if not error:
            future.set_result(response)
        elif isinstance(error, BaseException):
            future.set_exception(error)
        else:
            future.set_exception(TaskError(error))

    # ------------------------------------------------------------------
    # Concurrency control
    # ------------------------------------------------------------------

    def _refresh_rate_limits(self) -> None:
        """Pull fresh rate data from the configured rate_updater, if any."""
        updater = self._config.rate_updater
        if updater is None:
            return

        try:
            fresh = updater(self.rate_state)
        except Exception as e:
            logger.warning(
                f"Rate updater failed, keeping current rate state: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return

        if fresh:
            self.update_rate_limits(
                limit=fresh.get("limit"),
                remaining=fresh.get("remaining"),
                reset_at=fresh.get("reset_at"),
            )

    def _adjust_concurrency(self) -> None:
        with self._lock:
            # Until a remaining quota is known the bound stays where it is
            if not self._rate_state.has_rate_data:
                return

            if self._config.strategy == "burst_first":
                self._apply_burst_first_locked()
            else:
                # "uniform" plugs in here; validate() rejects it until then
                raise NotImplementedError(f"Strategy '{self._config.strategy}' is not implemented.")

    def _apply_burst_first_locked(self) -> None:
        adjusted_remaining = self._rate_state.remaining - self._config.threshold

        if adjusted_remaining > 1:
            self._pool.set_concurrency(self._cap(adjusted_remaining))
            return

        delay = max(0.0, self._rate_state.reset_at - self._clock())
        self._pool.pause()
        self._arm_timer_locked(delay + self._config.reset_grace)

    def _cap(self, value: float) -> int:
        """Floor a computed bound at 0 and cap it at max_concurrency."""
        bound = max(0, math.floor(value))
        if self._config.max_concurrency is not None:
            bound = min(bound, self._config.max_concurrency)
        if self._worker_threads is not None and bound > self._worker_threads:
            logger.debug(
                f"Concurrency bound {bound} exceeds the {self._worker_threads} worker threads; "
                f"at most {self._worker_threads} tasks run at once."
            )
        return bound

    # ------------------------------------------------------------------
    # Resume timer
    # ------------------------------------------------------------------

    def _arm_timer_locked(self, delay: float) -> None:
        replacing = self._timer is not None
        self._cancel_timer_locked()

        generation = self._timer_generation
        timer = threading.Timer(delay, self._on_reset, args=(generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

        if replacing:
            logger.debug(f"Resume timer re-armed: resuming in {delay:.3f}s")
        else:
            logger.info(
                f"Rate limit headroom exhausted (remaining={self._rate_state.remaining:g}, "
                f"threshold={self._config.threshold}). Pausing for {delay:.3f}s until reset."
            )

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # Invalidates a timer whose callback is already running
        self._timer_generation += 1

    def _on_reset(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation or self._timer is None:
                return
            self._timer = None

            limit = self._rate_state.limit
            if math.isfinite(limit):
                bound = self._cap(limit - self._config.threshold)
                if bound == 0:
                    logger.warning(
                        f"Rate limit ({limit:g}) does not exceed threshold ({self._config.threshold}). "
                        "Resuming with concurrency 0: no task will be dispatched."
                    )
                self._pool.set_concurrency(bound)

            self._pool.resume()
            logger.info(f"Rate limit window reset. Resumed with concurrency {self._pool.concurrency}.")
