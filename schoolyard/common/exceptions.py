"""Exception types for crawl errors.

Transient exceptions describe a single failed attempt that may succeed on
retry. Crawl job exceptions describe failures that end a whole job. Parse
anomalies are not represented here: the extraction functions resolve them
with documented defaults.
"""

from typing import Any


class TransientException(Exception):
    """Base class for transient errors that might resolve on retry.

    Transient exceptions represent temporary failures like network issues,
    server errors (5xx), timeouts or a block detected by the anti-blocking
    layer. The scheduler is responsible for retry logic and strategy.
    """

    pass


class HTMLResponseAssumptionException(TransientException):
    """Raised when HTTP response has unexpected status code.

    Attributes:
        status_code: The actual HTTP status code received.
        expected_codes: List of status codes that were expected.
        url: The URL that returned the unexpected status.
        message: Human-readable error message.
    """

    def __init__(
        self,
        status_code: int,
        expected_codes: list[int],
        url: str,
    ) -> None:
        self.status_code = status_code
        self.expected_codes = expected_codes
        self.url = url

        expected_str = ", ".join(str(code) for code in expected_codes)
        self.message = (
            f"HTTP {status_code} from {url} (expected one of: {expected_str})"
        )
        super().__init__(self.message)


class RequestTimeoutException(TransientException):
    """Raised when a request times out.

    Attributes:
        url: The URL that timed out.
        timeout_seconds: The timeout duration in seconds.
        message: Human-readable error message.
    """

    def __init__(self, url: str, timeout_seconds: float | None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.message = f"Request to {url} timed out after {timeout_seconds}s"
        super().__init__(self.message)


class NetworkException(TransientException):
    """Raised when the connection fails before a response arrives."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        self.message = f"Network error for {url}: {reason}"
        super().__init__(self.message)


class BlockedRequestException(TransientException):
    """Raised when a response looks like the site is blocking us.

    Attributes:
        url: The blocked URL.
        status_code: Status of the blocking response.
        signal: What triggered the detection ("status" or the body marker).
        proxy_tier: Tier the blocked attempt was dispatched through.
    """

    def __init__(
        self,
        url: str,
        status_code: int,
        signal: str,
        proxy_tier: int = 0,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.signal = signal
        self.proxy_tier = proxy_tier
        self.message = (
            f"Blocked at {url} (HTTP {status_code}, signal: {signal}, "
            f"tier {proxy_tier})"
        )
        super().__init__(self.message)


class PageUnavailableException(Exception):
    """Raised when a page answers with a client error that is not a block.

    A 404 or 410 will not change on retry, so the request fails at once.

    Attributes:
        url: The URL that was requested.
        status_code: The 4xx status received.
    """

    def __init__(self, url: str, status_code: int) -> None:
        self.url = url
        self.status_code = status_code
        self.message = f"HTTP {status_code} from {url}"
        super().__init__(self.message)


class ProxyTiersExhausted(Exception):
    """Raised when a request has failed through every proxy tier."""

    def __init__(self, url: str, tiers: int) -> None:
        self.url = url
        self.tiers = tiers
        self.message = f"All {tiers} proxy tier(s) exhausted for {url}"
        super().__init__(self.message)


class RequestFailed(Exception):
    """A request that will not be retried any further.

    Attributes:
        url: The URL that failed.
        retry_count: Attempts made before giving up.
        cause: The last underlying error.
    """

    def __init__(self, url: str, retry_count: int, cause: Exception) -> None:
        self.url = url
        self.retry_count = retry_count
        self.cause = cause
        self.message = (
            f"Request to {url} failed after {retry_count} retries: "
            f"{type(cause).__name__}: {cause}"
        )
        super().__init__(self.message)


# =============================================================================
# Job-fatal errors
# =============================================================================


class CrawlJobException(Exception):
    """Base class for failures that end a crawl job.

    Attributes:
        division_code: The division whose job failed.
        message: Human-readable description.
        context: Additional context for logs.
    """

    def __init__(
        self,
        message: str,
        division_code: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.division_code = division_code
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message, f"Division: {self.division_code}"]
        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)


class SeedRequestFailed(CrawlJobException):
    """The first LIST page of a division could not be fetched."""

    def __init__(self, division_code: int, failure: RequestFailed) -> None:
        self.failure = failure
        super().__init__(
            "Seed list page could not be fetched",
            division_code,
            {"url": failure.url, "retry_count": failure.retry_count},
        )


class JobAlreadyRunning(CrawlJobException):
    """A crawl for this division is already in progress."""

    def __init__(self, division_code: int) -> None:
        super().__init__("A crawl job is already running", division_code)


class StoreUnavailable(CrawlJobException):
    """The record store for a job could not be opened or written."""

    def __init__(self, division_code: int, reason: str) -> None:
        super().__init__(
            "Record store unavailable", division_code, {"reason": reason}
        )


class JobAborted(CrawlJobException):
    """The job was aborted before completing (e.g. the caller went away)."""

    def __init__(self, division_code: int, reason: str = "aborted") -> None:
        super().__init__("Crawl job aborted", division_code, {"reason": reason})
