"""Crawler configuration.

CrawlerConfig gathers every tunable of a crawl. Values come from keyword
arguments, from ``SCHOOLYARD_*`` environment variables via ``from_env``,
or from CLI options.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schoolyard.cache.freshness import DEFAULT_BASE_URL, FingerprintStrategy
from schoolyard.common.headers import PROFILES, HeaderProfile
from schoolyard.driver.jobs import JoinPolicy

ENV_PREFIX = "SCHOOLYARD_"


class CrawlerConfig(BaseModel):
    """Settings for the crawler, cache and job registry."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(
        DEFAULT_BASE_URL,
        description="List page URL template with a {division_code} field",
    )
    max_concurrency: int = Field(8, ge=1)
    max_requests_per_minute: int = Field(150, ge=1)
    max_request_retries: int = Field(3, ge=0)
    request_timeout: float = Field(30.0, gt=0)
    session_max_usage: int = Field(3, ge=1)
    proxy_tiers: list[list[str | None]] = Field(
        default_factory=lambda: [[None]]
    )
    min_delay: float = Field(0.5, ge=0)
    max_delay: float = Field(2.0, ge=0)
    max_memory_ratio: float = Field(0.9, gt=0, le=1)
    fingerprint_strategy: FingerprintStrategy = FingerprintStrategy.HEADERS
    join_policy: JoinPolicy = JoinPolicy.REJECT
    header_profile: str = "default"

    @field_validator("base_url")
    @classmethod
    def _has_division_placeholder(cls, value: str) -> str:
        if "{division_code}" not in value:
            raise ValueError("base_url must contain '{division_code}'")
        return value

    @field_validator("proxy_tiers")
    @classmethod
    def _non_empty_tiers(
        cls, value: list[list[str | None]]
    ) -> list[list[str | None]]:
        if not value or any(not tier for tier in value):
            raise ValueError("proxy_tiers must be a list of non-empty lists")
        return value

    @field_validator("header_profile")
    @classmethod
    def _known_profile(cls, value: str) -> str:
        if value not in PROFILES:
            raise ValueError(
                f"Unknown header profile {value!r}; "
                f"expected one of {sorted(PROFILES)}"
            )
        return value

    @model_validator(mode="after")
    def _delay_window(self) -> CrawlerConfig:
        if self.max_delay < self.min_delay:
            raise ValueError("max_delay must be >= min_delay")
        return self

    @property
    def profile(self) -> HeaderProfile:
        return PROFILES[self.header_profile]

    def list_url(self, division_code: int) -> str:
        return self.base_url.format(division_code=division_code)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> CrawlerConfig:
        """Build a config from ``SCHOOLYARD_*`` variables.

        ``SCHOOLYARD_PROXY_TIERS`` is JSON, e.g. ``[[null], ["http://p:1"]]``.
        Keyword overrides that are not None win over the environment.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            values[name] = json.loads(raw) if name == "proxy_tiers" else raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
