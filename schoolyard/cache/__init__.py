"""Change-detection cache and SQLite-backed stores.

This package provides:
- Header and content fingerprints of a division's list page
- The freshness check that decides between a cache hit and a crawl
- Key/value and append-only record stores on SQLModel + aiosqlite
"""

from schoolyard.cache.fingerprint import (
    FINGERPRINT_SENTINEL,
    content_fingerprint,
    header_fingerprint,
    is_sentinel,
    normalize_fragment,
    sentinel_fingerprint,
)
from schoolyard.cache.freshness import (
    ChangeDetectionCache,
    FingerprintStrategy,
)
from schoolyard.cache.stores import (
    KeyValueStore,
    RecordStore,
    SQLKeyValueStore,
    SQLRecordStore,
    StorageBackend,
)

__all__ = [
    "FINGERPRINT_SENTINEL",
    "ChangeDetectionCache",
    "FingerprintStrategy",
    "KeyValueStore",
    "RecordStore",
    "SQLKeyValueStore",
    "SQLRecordStore",
    "StorageBackend",
    "content_fingerprint",
    "header_fingerprint",
    "is_sentinel",
    "normalize_fragment",
    "sentinel_fingerprint",
]
