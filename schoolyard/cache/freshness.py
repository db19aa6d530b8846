"""Change-detection cache for division list pages.

``check_freshness`` always issues one cheap probe of the division's first
list page: a HEAD request for the header strategy, or a single GET for the
content strategy. The probe's fingerprint is compared with the stored
entry. A probe that fails in any way produces a sentinel fingerprint, so
the division is re-crawled instead of served from a wrong cache hit.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from schoolyard.cache.fingerprint import (
    content_fingerprint,
    header_fingerprint,
    is_sentinel,
    sentinel_fingerprint,
)
from schoolyard.cache.stores import KeyValueStore
from schoolyard.common.exceptions import StoreUnavailable, TransientException
from schoolyard.common.headers import HeaderSynthesizer
from schoolyard.common.request_manager import AsyncRequestManager
from schoolyard.data_types import (
    CacheEntry,
    FreshnessResult,
    HttpMethod,
    SchoolRecord,
    cache_key,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = (
    "https://schoolquality.virginia.gov/virginia-schools"
    "?division={division_code}"
)


class FingerprintStrategy(str, Enum):
    """How a division's list page is fingerprinted."""

    HEADERS = "headers"
    CONTENT = "content"


class ChangeDetectionCache:
    """Decides whether a division's cached records are still current.

    Args:
        store: Key/value store holding one CacheEntry per division.
        request_manager: Fetch primitive used for the probe.
        strategy: Fingerprint strategy.
        base_url: List URL template with a ``{division_code}`` field.
        headers: Header synthesizer for the probe request.
    """

    def __init__(
        self,
        store: KeyValueStore,
        request_manager: AsyncRequestManager,
        strategy: FingerprintStrategy = FingerprintStrategy.HEADERS,
        base_url: str = DEFAULT_BASE_URL,
        headers: HeaderSynthesizer | None = None,
    ) -> None:
        self.store = store
        self.request_manager = request_manager
        self.strategy = strategy
        self.base_url = base_url
        self.headers = headers or HeaderSynthesizer()

    def list_url(self, division_code: int) -> str:
        return self.base_url.format(division_code=division_code)

    async def current_fingerprint(self, division_code: int) -> str:
        """Probe the division's list page and fingerprint the result."""
        url = self.list_url(division_code)
        method = (
            HttpMethod.HEAD
            if self.strategy is FingerprintStrategy.HEADERS
            else HttpMethod.GET
        )
        try:
            response = await self.request_manager.fetch(
                url, method=method, headers=self.headers.synthesize()
            )
        except TransientException as e:
            logger.warning(f"Freshness probe failed for {url}: {e}")
            return sentinel_fingerprint()
        if response.status_code >= 400:
            logger.warning(
                f"Freshness probe for {url} returned HTTP "
                f"{response.status_code}"
            )
            return sentinel_fingerprint()

        if self.strategy is FingerprintStrategy.HEADERS:
            return header_fingerprint(response.headers)
        return content_fingerprint(response.text)

    async def load(self, division_code: int) -> CacheEntry | None:
        try:
            return await self.store.get(cache_key(division_code))
        except SQLAlchemyError as e:
            raise StoreUnavailable(division_code, str(e)) from e

    async def check_freshness(self, division_code: int) -> FreshnessResult:
        """Compare the current fingerprint with the stored entry's."""
        cached, fingerprint = await asyncio.gather(
            self.load(division_code), self.current_fingerprint(division_code)
        )
        fresh = (
            cached is not None
            and not is_sentinel(fingerprint)
            and cached.fingerprint == fingerprint
        )
        logger.info(
            f"Division {division_code} is {'fresh' if fresh else 'stale'} "
            f"({self.strategy.value} fingerprint"
            f"{', no cache entry' if cached is None else ''})"
        )
        return FreshnessResult(
            fresh=fresh, fingerprint=fingerprint, cached=cached
        )

    async def _save(self, entry: CacheEntry) -> None:
        try:
            await self.store.set(cache_key(entry.division_code), entry)
        except SQLAlchemyError as e:
            raise StoreUnavailable(entry.division_code, str(e)) from e

    async def refresh(self, entry: CacheEntry) -> CacheEntry:
        """Store the entry again with only its timestamp advanced."""
        touched = entry.touched()
        await self._save(touched)
        return touched

    async def persist(
        self,
        division_code: int,
        fingerprint: str,
        records: list[SchoolRecord],
    ) -> CacheEntry:
        """Overwrite the division's entry with a fresh crawl result."""
        entry = CacheEntry(
            division_code=division_code, fingerprint=fingerprint, data=records
        )
        await self._save(entry)
        logger.info(
            f"Cached {len(records)} records for division {division_code}"
        )
        return entry
