"""Anti-blocking layer: proxy tiers, session rotation, headers and delays.

Every attempt of a PageRequest goes through ``AntiBlockingLayer.prepare``,
an explicit pipeline of steps that each take an AttemptContext and return
a new one:

1. ``select_tier`` - proxy tier from the request's escalation metadata
2. ``bind_session`` - check out a session (identity + proxy) for the tier
3. ``synthesize_headers`` - a fresh randomized header set
4. ``schedule_delay`` - the politeness delay awaited before dispatch

No step mutates the request. After the response arrives,
``raise_for_block`` turns block signals into BlockedRequestException so
the scheduler can retry with a new identity.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import replace

from schoolyard.common.exceptions import (
    BlockedRequestException,
    HTMLResponseAssumptionException,
    ProxyTiersExhausted,
)
from schoolyard.common.headers import HeaderSynthesizer
from schoolyard.data_types import AttemptContext, PageRequest, Response, Session

logger = logging.getLogger(__name__)

BLOCK_STATUSES = frozenset({403, 429, 503})
BLOCK_MARKERS = ("captcha", "access denied", "too many requests")

ProxyTiers = list[list[str | None]]


class TieredProxyConfiguration:
    """Ordered proxy tiers; ``None`` in a tier means a direct connection.

    Example::

        proxies = TieredProxyConfiguration([[None], ["http://proxy:8080"]])
        proxies.tier_for(1)  # -> 1
        proxies.tier_for(2)  # raises ProxyTiersExhausted
    """

    def __init__(self, tiers: ProxyTiers | None = None) -> None:
        self.tiers: ProxyTiers = tiers if tiers is not None else [[None]]
        if not self.tiers or any(not tier for tier in self.tiers):
            raise ValueError("Proxy tiers must be non-empty lists")
        self._cursors = [0] * len(self.tiers)

    def __len__(self) -> int:
        return len(self.tiers)

    @property
    def escalates(self) -> bool:
        """Whether there is any tier to escalate to."""
        return len(self.tiers) > 1

    def tier_for(self, failures: int, url: str = "") -> int:
        """Tier for an attempt after ``failures`` escalations.

        Raises:
            ProxyTiersExhausted: When ``failures`` is past the last tier.
        """
        if failures >= len(self.tiers):
            raise ProxyTiersExhausted(url=url, tiers=len(self.tiers))
        return failures

    def proxy_for(self, tier: int) -> str | None:
        """Next endpoint of the tier, round-robin across new sessions."""
        endpoints = self.tiers[tier]
        endpoint = endpoints[self._cursors[tier] % len(endpoints)]
        self._cursors[tier] += 1
        return endpoint


class SessionPool:
    """Lock-guarded pool of crawl sessions.

    Sessions are created lazily per proxy tier and serve at most
    ``max_usage_count`` attempts. A session is retired when it reaches
    that ceiling, when it is checked out for a retry, or when the
    scheduler reports its attempt failed. Retired sessions leave the pool
    and are never handed out again.
    """

    def __init__(
        self,
        proxies: TieredProxyConfiguration | None = None,
        max_usage_count: int = 3,
    ) -> None:
        if max_usage_count < 1:
            raise ValueError("max_usage_count must be at least 1")
        self.proxies = proxies or TieredProxyConfiguration()
        self.max_usage_count = max_usage_count
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self.created = 0
        self.retired = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def _new_session(self, tier: int) -> Session:
        self.created += 1
        return Session(
            id=uuid.uuid4().hex,
            proxy_tier=tier,
            proxy_url=self.proxies.proxy_for(tier),
        )

    def _reusable(self, tier: int) -> Session | None:
        for session in self._sessions.values():
            if session.proxy_tier == tier and not session.retired:
                return session
        return None

    async def checkout(self, tier: int, retry: bool = False) -> Session:
        """Hand out a session for one attempt on ``tier``.

        A retry always gets a brand new session, used once.
        """
        async with self._lock:
            session = None if retry else self._reusable(tier)
            if session is None:
                session = self._new_session(tier)
            session = session.used()
            if retry or session.usage_count >= self.max_usage_count:
                session = session.retire()
                self._sessions.pop(session.id, None)
                self.retired += 1
            else:
                self._sessions[session.id] = session
            return session

    async def retire(self, session_id: str) -> None:
        """Retire a session; unknown or already retired ids are ignored."""
        async with self._lock:
            if self._sessions.pop(session_id, None) is not None:
                self.retired += 1
                logger.debug(f"Retired session {session_id}")


def detect_block(response: Response) -> str | None:
    """The block signal of a response, or None if it looks normal."""
    if response.status_code in BLOCK_STATUSES:
        return "status"
    body = response.text.lower()
    for marker in BLOCK_MARKERS:
        if marker in body:
            return marker
    return None


def is_blocked(response: Response) -> bool:
    return detect_block(response) is not None


class AntiBlockingLayer:
    """Prepares each attempt and recognizes blocked responses.

    Args:
        proxies: Proxy tiers. Defaults to a single direct tier.
        sessions: Session pool. Defaults to one over ``proxies``.
        headers: Header synthesizer.
        min_delay: Lower bound of the politeness delay, in seconds.
        max_delay: Upper bound of the politeness delay, in seconds.
        rng: Random source for delays.
    """

    def __init__(
        self,
        proxies: TieredProxyConfiguration | None = None,
        sessions: SessionPool | None = None,
        headers: HeaderSynthesizer | None = None,
        min_delay: float = 0.5,
        max_delay: float = 2.0,
        rng: random.Random | None = None,
    ) -> None:
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError(
                f"Invalid delay window [{min_delay}, {max_delay}]"
            )
        self.proxies = proxies or TieredProxyConfiguration()
        self.sessions = sessions or SessionPool(self.proxies)
        self.headers = headers or HeaderSynthesizer()
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    async def prepare(self, request: PageRequest) -> AttemptContext:
        """Run the attempt pipeline for ``request``.

        Raises:
            ProxyTiersExhausted: The request escalated past the last tier.
        """
        context = AttemptContext(request=request)
        context = self.select_tier(context)
        context = await self.bind_session(context)
        context = self.synthesize_headers(context)
        return self.schedule_delay(context)

    def select_tier(self, context: AttemptContext) -> AttemptContext:
        request = context.request
        tier = self.proxies.tier_for(request.proxy_tier, url=request.url)
        return replace(context, proxy_tier=tier)

    async def bind_session(self, context: AttemptContext) -> AttemptContext:
        request = context.request
        session = await self.sessions.checkout(
            context.proxy_tier, retry=request.retry_count > 0
        )
        return replace(
            context, session=session, request=request.bound_to(session.id)
        )

    def synthesize_headers(self, context: AttemptContext) -> AttemptContext:
        return replace(context, headers=self.headers.synthesize())

    def schedule_delay(self, context: AttemptContext) -> AttemptContext:
        return replace(context, delay=self.politeness_delay())

    def politeness_delay(self) -> float:
        """Uniform delay in ``[min_delay, max_delay]`` seconds."""
        return self._rng.uniform(self.min_delay, self.max_delay)

    def raise_for_block(
        self, response: Response, context: AttemptContext
    ) -> None:
        """Raise BlockedRequestException if ``response`` is a block."""
        signal = detect_block(response)
        if signal is not None:
            raise BlockedRequestException(
                url=context.request.url,
                status_code=response.status_code,
                signal=signal,
                proxy_tier=context.proxy_tier,
            )

    def is_block_failure(self, error: Exception) -> bool:
        """Whether a failed attempt was a block rather than a plain fault.

        A 503 is raised by the request manager as a server error before
        the body is inspected, so it is recognized here by status.
        """
        if isinstance(error, BlockedRequestException):
            return True
        return (
            isinstance(error, HTMLResponseAssumptionException)
            and error.status_code in BLOCK_STATUSES
        )

    def should_escalate(self, error: Exception, request: PageRequest) -> bool:
        """Whether the retry of ``request`` moves up a proxy tier.

        A block escalates at once; any other failure escalates when the
        failed attempt was already a retry. With a single tier nothing
        escalates and retries stay on tier 0 with a new session.
        """
        if not self.proxies.escalates:
            return False
        return self.is_block_failure(error) or request.retry_count > 0

    async def release(self, context: AttemptContext, failed: bool) -> None:
        """Return an attempt's session; failed attempts retire it."""
        if failed and context.session is not None:
            await self.sessions.retire(context.session.id)
