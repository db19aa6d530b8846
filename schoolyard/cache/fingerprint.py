"""Fingerprints for detecting upstream changes to a division's list page.

Two strategies are supported. The header strategy hashes the validators of
a metadata-only response; the content strategy hashes a normalized copy of
the schools table and pager. Both are deterministic, and neither raises:
a failure yields a sentinel that never equals any stored fingerprint.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections.abc import Mapping

from schoolyard.extraction import extract_fingerprint_fragments

logger = logging.getLogger(__name__)

FINGERPRINT_SENTINEL = "unavailable"

VALIDATOR_HEADERS = ("etag", "last-modified", "content-length")

_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_WHITESPACE = re.compile(r"\s+")
_TAG_BOUNDARY = re.compile(r"\s*([<>])\s*")
_ATTRIBUTE_QUOTE = re.compile(r"\s*(=?)\s*([\"'])\s*")
_TAG = re.compile(r"<[^<>]*>")


def sentinel_fingerprint() -> str:
    """A fresh, unique fingerprint that matches nothing."""
    return f"{FINGERPRINT_SENTINEL}:{uuid.uuid4()}"


def is_sentinel(fingerprint: str) -> bool:
    return fingerprint.startswith(f"{FINGERPRINT_SENTINEL}:")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_fragment(html: str) -> str:
    """Normalize an HTML fragment so formatting changes hash identically.

    Comments are stripped, whitespace runs collapse to one space,
    whitespace next to tag boundaries and, inside tags, next to attribute
    quotes is removed, and the result is lowercased. Quotes in text are
    left alone.
    """
    text = _COMMENT.sub("", html)
    text = _WHITESPACE.sub(" ", text)
    text = _TAG_BOUNDARY.sub(r"\1", text)
    text = _TAG.sub(
        lambda tag: _ATTRIBUTE_QUOTE.sub(r"\1\2", tag.group(0)), text
    )
    return text.strip().lower()


def header_fingerprint(headers: Mapping[str, str]) -> str:
    """Hash of the ETag, Last-Modified and Content-Length validators.

    Header names are matched case-insensitively. Missing validators
    serialize as empty strings.
    """
    try:
        lowered = {k.lower(): v for k, v in headers.items()}
        joined = ",".join(lowered.get(name, "") for name in VALIDATOR_HEADERS)
        return _sha256(joined)
    except Exception as e:
        logger.warning(f"Header fingerprint failed, using sentinel: {e}")
        return sentinel_fingerprint()


def content_fingerprint(html: str) -> str:
    """Hash of the normalized schools table followed by the normalized pager."""
    try:
        table_html, pager_html = extract_fingerprint_fragments(html)
        return _sha256(
            normalize_fragment(table_html) + normalize_fragment(pager_html)
        )
    except Exception as e:
        logger.warning(f"Content fingerprint failed, using sentinel: {e}")
        return sentinel_fingerprint()
