"""
HTTP client abstraction wired to the adaptive limiter.

Available implementations:
    - RequestsHttpClient: Plain `requests` implementation.
    - AdaptiveLimitedHttpClient: Decorator that admits every request through
      an AdaptiveLimiter and feeds the rate-limit data of each response back
      into it.

The decorator does not know any header names: the caller supplies a function
that extracts `limit`, `remaining` and `reset_at` from a response.

Example:
    >>> from quotaflow._http import AdaptiveLimitedHttpClient, RequestsHttpClient
    >>>
    >>> def github_rate_limits(response):
    ...     return {
    ...         "limit": response.headers.get("X-RateLimit-Limit"),
    ...         "remaining": response.headers.get("X-RateLimit-Remaining"),
    ...         "reset_at": response.headers.get("X-RateLimit-Reset"),
    ...     }
    >>>
    >>> client = AdaptiveLimitedHttpClient(
    ...     delegate=RequestsHttpClient(),
    ...     extract_rate_limits=github_rate_limits,
    ... )
    >>> response = client.get("https://api.github.com/rate_limit")
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any, override

import requests

from quotaflow._limiter import AdaptiveLimiter, ResponseHandler

logger = logging.getLogger(__name__)

RateLimitsExtractor = Callable[[requests.Response], Mapping[str, Any] | None]


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP clients.

    Implementations perform the actual I/O and can be wrapped with
    decorators for rate limiting and other cross-cutting concerns.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def get(self, url, headers=None, timeout=30):
        ...         return requests.get(url, headers=headers, timeout=timeout)
        ...     def post(self, url, data=None, headers=None, timeout=30):
        ...         return requests.post(url, json=data, headers=headers, timeout=timeout)
    """

    @abstractmethod
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        """
        Execute a GET request.

        Args:
            url: The full URL to request.
            headers: Additional headers to include.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass

    @abstractmethod
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        """
        Execute a POST request with JSON body.

        Args:
            url: The full URL to request.
            data: JSON-serializable data to send in the request body.
            headers: Additional headers to include.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass


# =============================================================================
# Requests Implementation
# =============================================================================


class RequestsHttpClient(HttpClient):
    """
    HTTP client backed by a `requests.Session`.

    Args:
        session: Optional session to reuse (connection pooling, default headers).
    """

    def __init__(self, session: requests.Session | None = None):
        self._session = session or requests.Session()

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        return self._session.get(url, headers=headers, timeout=timeout)

    @override
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        return self._session.post(url, json=data, headers=headers, timeout=timeout)


# =============================================================================
# Limiter Decorator
# =============================================================================


class AdaptiveLimitedHttpClient(HttpClient):
    """
    HTTP client decorator that admits every request through an AdaptiveLimiter.

    Each request becomes a limiter task. Once the delegate returns, the rate
    limits extracted from the response are reported to the limiter before
    the task completes, so the next concurrency decision already sees them.
    The calling thread blocks until the request has been admitted and
    executed.

    Both GET and POST are limited: external quotas usually count every call.

    Example:
        >>> limiter = AdaptiveLimiter(threshold=10)
        >>> client = AdaptiveLimitedHttpClient(
        ...     delegate=RequestsHttpClient(),
        ...     extract_rate_limits=my_extractor,
        ...     limiter=limiter,
        ... )

    Args:
        delegate: The underlying HTTP client to delegate requests to.
        extract_rate_limits: Function returning a mapping with any of the
            `limit`, `remaining` and `reset_at` keys for a response, or None.
        limiter: The limiter to admit requests through. A private limiter with
            the global configuration is created when omitted.
        max_wait_time: Maximum seconds to wait for a request to be admitted
            and executed. None waits indefinitely.

    Raises:
        TimeoutError: If max_wait_time is exceeded.
    """

    def __init__(
        self,
        delegate: HttpClient,
        extract_rate_limits: RateLimitsExtractor,
        limiter: AdaptiveLimiter | None = None,
        max_wait_time: float | None = None,
    ):
        assert delegate is not None, "Delegate HTTP client is required."
        assert extract_rate_limits is not None, "extract_rate_limits cannot be None."
        assert callable(extract_rate_limits), "extract_rate_limits must be callable."
        assert max_wait_time is None or max_wait_time > 0, "max_wait_time must be > 0 or None."

        self.delegate = delegate
        self.extract_rate_limits = extract_rate_limits
        self.limiter = limiter or AdaptiveLimiter()
        self.max_wait_time = max_wait_time

    def _execute(self, send: Callable[[], requests.Response]) -> requests.Response:
        def request_handler(respond: ResponseHandler) -> None:
            response = send()
            rate_limits = self.extract_rate_limits(response)
            if rate_limits:
                self.limiter.update_rate_limits(
                    limit=rate_limits.get("limit"),
                    remaining=rate_limits.get("remaining"),
                    reset_at=rate_limits.get("reset_at"),
                )
            else:
                logger.debug(f"No rate limits found in response (HTTP {response.status_code}).")
            respond(None, response)

        return self.limiter.submit(request_handler).result(timeout=self.max_wait_time)

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        """Admit a GET request through the limiter and delegate it."""
        return self._execute(lambda: self.delegate.get(url, headers, timeout))

    @override
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ) -> requests.Response:
        """Admit a POST request through the limiter and delegate it."""
        return self._execute(lambda: self.delegate.post(url, data, headers, timeout))
