"""Data types for the division crawler.

This module defines the values that flow between the scheduler, the
extraction functions, the anti-blocking layer and the cache. These types
are designed to be:

1. Immutable - request and session state changes return new instances
2. Serializable - records and cache entries round-trip through JSON
3. Bound at extraction time - a DETAIL request carries the stub of the row
   that produced its URL
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from urllib.parse import quote, unquote, urlparse, urlunparse

from pydantic import BaseModel, ConfigDict, Field

ADDRESS_NOT_FOUND = "Address not found"


def cache_key(division_code: int) -> str:
    """Key under which a division's cache entry is stored."""
    return f"schools-{division_code}"


class PageKind(Enum):
    """Kinds of pages the crawler visits."""

    LIST = "LIST"
    DETAIL = "DETAIL"


class HttpMethod(Enum):
    """HTTP methods used by the crawler."""

    GET = "GET"
    HEAD = "HEAD"


# =============================================================================
# Extraction results
# =============================================================================


@dataclass(frozen=True)
class SchoolStub:
    """Summary fields read from one row of a division's school table."""

    name: str
    division: str
    grade_span: str


@dataclass(frozen=True)
class SchoolLink:
    """An absolute detail URL paired with the stub of the row it came from."""

    url: str
    stub: SchoolStub


@dataclass(frozen=True)
class ListPage:
    """Parsed contents of one LIST page.

    Attributes:
        school_links: Detail links in row order, each bound to its stub.
        total_pages: Highest page number advertised by the pager, at least 1.
    """

    school_links: list[SchoolLink] = field(default_factory=list)
    total_pages: int = 1


# =============================================================================
# Requests and responses
# =============================================================================


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication.

    Lowercases the scheme and host, drops the fragment, strips a trailing
    slash from the path and re-encodes path and query so that ``%20`` and
    a literal space compare equal.
    """
    parsed = urlparse(url.strip())
    path = quote(unquote(parsed.path), safe="/")
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    query = quote(unquote(parsed.query), safe="=&")
    return urlunparse(
        (
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            path,
            parsed.params,
            query,
            "",
        )
    )


def _generate_deduplication_key(url: str, division_code: int) -> str:
    """SHA256 of the normalized URL and the owning division."""
    combined = f"{normalize_url(url)}|{division_code}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PageRequest:
    """A LIST or DETAIL page to fetch on behalf of one division.

    The request is never mutated once enqueued. The scheduler derives new
    instances for retries (``with_retry``) and session binding
    (``bound_to``); both keep the deduplication key.

    Attributes:
        url: Absolute URL of the page.
        kind: LIST or DETAIL.
        division_code: Division the page belongs to. Results are routed to
            the owning job by this value.
        page: Page number, meaningful for LIST requests.
        pending_school: Stub awaiting its address, set on DETAIL requests.
        retry_count: Number of failed attempts so far.
        proxy_tier: Proxy tier for the next attempt; raised after a block.
        session_id: Session used by the current attempt, if any.
        deduplication_key: Normalized URL + division hash.
    """

    url: str
    kind: PageKind
    division_code: int
    page: int = 1
    pending_school: SchoolStub | None = None
    retry_count: int = 0
    proxy_tier: int = 0
    session_id: str | None = None
    deduplication_key: str = ""

    def __post_init__(self) -> None:
        if self.kind is PageKind.DETAIL and self.pending_school is None:
            raise ValueError("DETAIL requests must carry a pending school")
        if not self.deduplication_key:
            object.__setattr__(
                self,
                "deduplication_key",
                _generate_deduplication_key(self.url, self.division_code),
            )

    @property
    def is_seed(self) -> bool:
        """True for the first LIST page of a division."""
        return self.kind is PageKind.LIST and self.page == 1

    def with_retry(self, escalate: bool = False) -> PageRequest:
        """Return a copy with the retry counter advanced and no session.

        Args:
            escalate: Move the next attempt up one proxy tier.
        """
        return replace(
            self,
            retry_count=self.retry_count + 1,
            proxy_tier=self.proxy_tier + 1 if escalate else self.proxy_tier,
            session_id=None,
        )

    def bound_to(self, session_id: str) -> PageRequest:
        """Return a copy bound to the given session."""
        return replace(self, session_id=session_id)


@dataclass
class Response:
    """HTTP response from fetching a page.

    Modeled after httpx.Response to provide a familiar interface.

    Attributes:
        status_code: HTTP status code (200, 404, etc.).
        headers: Response headers with lowercased names.
        content: Raw response bytes.
        text: Decoded response text.
        url: Final URL after any redirects.
        request: The PageRequest that triggered this response, if any.
    """

    status_code: int
    headers: dict[str, str]
    content: bytes
    text: str
    url: str
    request: PageRequest | None = None

    def header(self, name: str) -> str:
        """Case-insensitive header lookup; missing headers are ''."""
        return self.headers.get(name.lower(), "")


# =============================================================================
# Records and cache entries
# =============================================================================


class SchoolRecord(BaseModel):
    """A school with its address, the unit written to the output channel."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(..., description="School name")
    division: str = Field(..., description="Division name")
    grade_span: str = Field(
        ..., alias="gradeSpan", description="Grades served, e.g. PK-5"
    )
    address: str = Field(ADDRESS_NOT_FOUND, description="Street address")
    division_code: int = Field(
        ..., alias="divisionCode", description="Numeric division code"
    )

    @classmethod
    def from_stub(
        cls, stub: SchoolStub, address: str, division_code: int
    ) -> SchoolRecord:
        return cls(
            name=stub.name,
            division=stub.division,
            grade_span=stub.grade_span,
            address=address or ADDRESS_NOT_FOUND,
            division_code=division_code,
        )

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with the public field names (gradeSpan, divisionCode)."""
        return self.model_dump(by_alias=True)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CacheEntry(BaseModel):
    """Most recent crawl result for one division."""

    model_config = ConfigDict(populate_by_name=True)

    division_code: int = Field(..., alias="divisionCode")
    fingerprint: str
    timestamp: int = Field(default_factory=now_ms)
    data: list[SchoolRecord] = Field(default_factory=list)

    def touched(self) -> CacheEntry:
        """Copy with the timestamp advanced; fingerprint and data unchanged.

        The timestamp strictly increases even when called twice within the
        same millisecond.
        """
        return self.model_copy(
            update={"timestamp": max(now_ms(), self.timestamp + 1)}
        )


# =============================================================================
# Anti-blocking state
# =============================================================================


@dataclass(frozen=True)
class Session:
    """A bound crawl identity (connection + proxy) with a usage ceiling.

    Attributes:
        id: Unique session identifier.
        usage_count: Number of attempts this session has served.
        proxy_tier: Index of the proxy tier the session is bound to.
        proxy_url: Proxy endpoint, or None for a direct connection.
        retired: Retired sessions are never handed out again.
    """

    id: str
    usage_count: int = 0
    proxy_tier: int = 0
    proxy_url: str | None = None
    retired: bool = False

    def used(self) -> Session:
        return replace(self, usage_count=self.usage_count + 1)

    def retire(self) -> Session:
        return replace(self, retired=True)


@dataclass(frozen=True)
class AttemptContext:
    """Everything needed to dispatch one attempt of a PageRequest.

    Built by the anti-blocking pipeline; each step returns a new context.
    """

    request: PageRequest
    proxy_tier: int = 0
    session: Session | None = None
    headers: dict[str, str] = field(default_factory=dict)
    delay: float = 0.0

    @property
    def proxy_url(self) -> str | None:
        return self.session.proxy_url if self.session else None


@dataclass(frozen=True)
class FreshnessResult:
    """Outcome of a freshness check.

    Attributes:
        fresh: True when the current fingerprint equals the stored one.
        fingerprint: Fingerprint computed for the current upstream content.
        cached: The stored entry, if any.
    """

    fresh: bool
    fingerprint: str
    cached: CacheEntry | None = None
