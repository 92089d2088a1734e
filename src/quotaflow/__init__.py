"""
quotaflow: adaptive, rate-aware task admission for Python.

Runs work items with bounded concurrency and adjusts that bound from the
rate-limit data the work items report (e.g. HTTP quota headers), pausing
until the quota window resets when the reserved headroom is reached.

Quick Start:
    >>> from quotaflow import AdaptiveLimiter
    >>> limiter = AdaptiveLimiter(threshold=5)
    >>>
    >>> def fetch(respond):
    ...     response = requests.get(url)
    ...     limiter.update_rate_limits(
    ...         limit=response.headers.get("X-RateLimit-Limit"),
    ...         remaining=response.headers.get("X-RateLimit-Remaining"),
    ...         reset_at=response.headers.get("X-RateLimit-Reset"),
    ...     )
    ...     respond(None, response)
    >>>
    >>> response = limiter.submit(fetch).result()

Global Configuration:
    >>> from quotaflow import QUOTAFLOW
    >>> QUOTAFLOW.configure(limiter={"threshold": 10, "max_concurrency": 50})

Main Classes:
    - AdaptiveLimiter: FIFO task queue with a rate-driven concurrency bound.
    - WorkerPool: FIFO dispatcher with a mutable concurrency bound.
    - RateState: Latest reported rate-limit data.
    - ResponseHandler: Error-first completion handle passed to tasks.

Configuration:
    - QUOTAFLOW: Global singleton for configuration.
    - QuotaFlowConfig: Root configuration dataclass.
    - LimiterConfig: Limiter configuration.
    - LimiterStrategy: Type alias for valid concurrency strategies.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

Errors:
    - QuotaFlowError: Base exception for limiter errors.
    - InvalidTaskError: A submitted task is not callable.
    - TaskError: A task reported a non-exception error value.
    - LimiterShutdownError: A task was submitted after, or discarded by, shutdown.

HTTP Client:
    - HttpClient: Abstract base class for HTTP clients.
    - RequestsHttpClient: HTTP client backed by requests.
    - AdaptiveLimitedHttpClient: HTTP client decorator admitting requests through a limiter.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("quotaflow")

from quotaflow._config import (
    QUOTAFLOW,
    ConfigEnvVarError,
    ConfigValidationError,
    LimiterConfig,
    LimiterStrategy,
    QuotaFlowConfig,
)
from quotaflow._http import (
    AdaptiveLimitedHttpClient,
    HttpClient,
    RequestsHttpClient,
)
from quotaflow._limiter import (
    AdaptiveLimiter,
    InvalidTaskError,
    LimiterShutdownError,
    QuotaFlowError,
    RateState,
    ResponseHandler,
    TaskError,
)
from quotaflow._pool import WorkerPool

__all__ = [
    "__version__",
    # Limiter
    "AdaptiveLimiter",
    "WorkerPool",
    "RateState",
    "ResponseHandler",
    # Configuration
    "QUOTAFLOW",
    "QuotaFlowConfig",
    "LimiterConfig",
    "LimiterStrategy",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Errors
    "QuotaFlowError",
    "InvalidTaskError",
    "TaskError",
    "LimiterShutdownError",
    # HTTP Client
    "HttpClient",
    "RequestsHttpClient",
    "AdaptiveLimitedHttpClient",
]
