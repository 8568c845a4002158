"""GraphQL client for per-network indexing services, with rate limiting and retry logic."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import httpx

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
MAX_REQUESTS_PER_SECOND = 10
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 0.5
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                wait_time = self._min_interval - elapsed
                await asyncio.sleep(wait_time)
            self._last_request_time = time.monotonic()


class IndexerClientError(Exception):
    """Base exception for IndexerClient errors."""


class IndexerTransientError(IndexerClientError):
    """Raised for retryable errors (429/5xx, connection failures, timeouts)."""


class IndexerResponseError(IndexerClientError):
    """Raised when the indexer answers with GraphQL errors or an unusable body."""


class UnknownNetworkError(IndexerClientError):
    """Raised when no indexer endpoint is configured for a network."""


class RetryError(IndexerClientError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (IndexerTransientError,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff to a coroutine.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


class IndexerClient:
    """GraphQL client for the indexing service of each configured network.

    One HTTP connection pool is shared by all networks; each network has its
    own endpoint URL.

    Example:
        >>> client = IndexerClient(endpoints={"base": "https://indexer.example/base/gql"})
        >>> data = await client.query("base", "{ buildersProjects { items { id } } }")
        >>> await client.aclose()
    """

    def __init__(
        self,
        endpoints: dict[str, str],
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
    ) -> None:
        """Initialize the indexer client.

        Args:
            endpoints: Mapping of network id to GraphQL endpoint URL.
            http_client: Optional pre-built httpx client (tests inject a mock transport).
            timeout_seconds: Per-request timeout.
            requests_per_second: Rate limit shared across networks.
        """
        self._endpoints = dict(endpoints)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._rate_limiter = RateLimiter(requests_per_second)

        logger.info(
            "Initialized IndexerClient for networks=%s, rate_limit=%.1f req/s",
            ",".join(self._endpoints) or "(none)",
            requests_per_second,
        )

    @property
    def networks(self) -> tuple[str, ...]:
        return tuple(self._endpoints)

    def endpoint_for(self, network_id: str) -> str:
        try:
            return self._endpoints[network_id]
        except KeyError:
            raise UnknownNetworkError(f"No indexer endpoint configured for {network_id}") from None

    @with_retry()
    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        await self._rate_limiter.acquire()
        try:
            response = await self._http.post(url, json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise IndexerTransientError(f"Request to {url} failed: {e}") from e

        if response.status_code in RETRY_STATUS_CODES:
            raise IndexerTransientError(f"Indexer returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise IndexerResponseError(f"Indexer returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise IndexerResponseError(f"Indexer returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise IndexerResponseError("Indexer returned a non-object body")
        return body

    async def query(
        self,
        network_id: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run a GraphQL query against one network's indexer.

        Args:
            network_id: Network whose indexer to query.
            query: GraphQL document.
            variables: Optional GraphQL variables.

        Returns:
            The `data` object of the GraphQL response.

        Raises:
            UnknownNetworkError: If the network has no endpoint.
            IndexerResponseError: If the response carries GraphQL errors.
            RetryError: If transient failures persist past the retry limit.
        """
        url = self.endpoint_for(network_id)
        body = await self._post(url, {"query": query, "variables": variables or {}})

        errors = body.get("errors")
        if errors:
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise IndexerResponseError(f"GraphQL errors from {network_id}: {messages}")

        data = body.get("data")
        if not isinstance(data, dict):
            raise IndexerResponseError(f"GraphQL response from {network_id} has no data object")
        return data

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()
