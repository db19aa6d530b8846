"""Bounded, rate-limited request scheduler for division crawls.

RequestScheduler drives LIST and DETAIL requests through the anti-blocking
layer, the request manager and the extraction functions until the queue
drains. One scheduler may serve several divisions at once; every request
carries its division code and results are routed by it.

Example::

    scheduler = RequestScheduler(manager, anti_blocking, on_record=sink)
    await scheduler.enqueue(seed_request)
    await scheduler.run()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pyrate_limiter import Duration, InMemoryBucket, Limiter, Rate
from typing_extensions import assert_never

from schoolyard.common.exceptions import (
    CrawlJobException,
    PageUnavailableException,
    ProxyTiersExhausted,
    RequestFailed,
    SeedRequestFailed,
    TransientException,
)
from schoolyard.common.request_manager import AsyncRequestManager
from schoolyard.data_types import (
    AttemptContext,
    PageKind,
    PageRequest,
    Response,
    SchoolRecord,
)
from schoolyard.driver.anti_blocking import AntiBlockingLayer
from schoolyard.driver.autoscale import AutoscaledConcurrency
from schoolyard.extraction import (
    detail_requests,
    next_list_request,
    parse_detail_page,
    parse_list_page,
)

logger = logging.getLogger(__name__)

RecordCallback = Callable[[SchoolRecord], Awaitable[Any]]
FailureCallback = Callable[[PageRequest, RequestFailed], Awaitable[None]]


@dataclass
class SchedulerStats:
    """Counters kept by the scheduler across all divisions."""

    enqueued: dict[PageKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in PageKind}
    )
    completed: int = 0
    failed: int = 0
    retried: int = 0
    duplicates: int = 0
    discarded: int = 0
    peak_in_flight: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enqueued": {k.value: v for k, v in self.enqueued.items()},
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "duplicates": self.duplicates,
            "discarded": self.discarded,
            "peak_in_flight": self.peak_in_flight,
        }


class RequestScheduler:
    """Work queue of PageRequests with dedup, retries and abort.

    Args:
        request_manager: Fetch primitive.
        anti_blocking: Prepares every attempt and detects blocks.
        max_concurrency: Upper bound on fetches in flight.
        max_requests_per_minute: Rolling dispatch limit.
        max_request_retries: Retries before a request fails permanently.
        max_memory_ratio: Memory usage above which concurrency shrinks.
        on_record: Awaited with each SchoolRecord built from a DETAIL page.
        on_request_failed: Awaited with each permanently failed request.
        concurrency: Concurrency limit; built from the arguments above
            when omitted.
    """

    def __init__(
        self,
        request_manager: AsyncRequestManager,
        anti_blocking: AntiBlockingLayer,
        max_concurrency: int = 8,
        max_requests_per_minute: int = 150,
        max_request_retries: int = 3,
        max_memory_ratio: float = 0.9,
        on_record: RecordCallback | None = None,
        on_request_failed: FailureCallback | None = None,
        concurrency: AutoscaledConcurrency | None = None,
    ) -> None:
        self.request_manager = request_manager
        self.anti_blocking = anti_blocking
        self.max_concurrency = max_concurrency
        self.max_request_retries = max_request_retries
        self.on_record = on_record
        self.on_request_failed = on_request_failed
        self.concurrency = concurrency or AutoscaledConcurrency(
            max_concurrency, max_memory_ratio=max_memory_ratio
        )
        self._limiter = Limiter(
            InMemoryBucket([Rate(max_requests_per_minute, Duration.MINUTE)]),
            raise_when_fail=False,
        )
        self.stats = SchedulerStats()

        self._queue: asyncio.Queue[PageRequest] = asyncio.Queue()
        self._seen: dict[int, set[str]] = {}
        self._aborted: set[int] = set()
        self._errors: dict[int, CrawlJobException] = {}
        self._pending: dict[int, int] = {}
        self._idle: dict[int, asyncio.Event] = {}
        self._release_when_idle: set[int] = set()
        self._workers: list[asyncio.Task[None]] = []
        self._stop_event = asyncio.Event()

    # -------------------------------------------------------------------------
    # Queue bookkeeping
    # -------------------------------------------------------------------------

    def _idle_event(self, division_code: int) -> asyncio.Event:
        event = self._idle.get(division_code)
        if event is None:
            event = asyncio.Event()
            event.set()
            self._idle[division_code] = event
        return event

    def _put(self, request: PageRequest) -> None:
        code = request.division_code
        self._pending[code] = self._pending.get(code, 0) + 1
        self._idle_event(code).clear()
        self._queue.put_nowait(request)

    def _finish(self, request: PageRequest) -> None:
        code = request.division_code
        remaining = self._pending.get(code, 0) - 1
        if remaining <= 0:
            self._pending.pop(code, None)
            self._idle_event(code).set()
            if code in self._release_when_idle:
                self.release_division(code)
        else:
            self._pending[code] = remaining

    async def enqueue(self, request: PageRequest) -> bool:
        """Add a request unless its division is aborted or it is a duplicate.

        Returns:
            True if the request was queued.
        """
        code = request.division_code
        if code in self._aborted:
            logger.debug(f"Not enqueuing {request.url}: division {code} aborted")
            return False
        seen = self._seen.setdefault(code, set())
        if request.deduplication_key in seen:
            self.stats.duplicates += 1
            logger.debug(f"Duplicate request dropped: {request.url}")
            return False
        seen.add(request.deduplication_key)
        self.stats.enqueued[request.kind] += 1
        self._put(request)
        return True

    def pending(self, division_code: int) -> int:
        """Requests of the division that are queued or in flight."""
        return self._pending.get(division_code, 0)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    def start(self) -> None:
        """Start the worker tasks. Calling it while running is a no-op."""
        if self.running:
            return
        self._stop_event.clear()
        self._workers = [
            asyncio.create_task(self._worker(i))
            for i in range(self.max_concurrency)
        ]
        logger.debug(f"Started {len(self._workers)} scheduler workers")

    async def stop(self) -> None:
        """Stop the workers. In-flight attempts are cancelled."""
        self._stop_event.set()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def run(self) -> None:
        """Process requests until the queue is empty and nothing is in flight."""
        owns_workers = not self.running
        self.start()
        try:
            await self._queue.join()
        finally:
            if owns_workers:
                await self.stop()
        self.stats.peak_in_flight = self.concurrency.peak_in_flight
        logger.info(f"Scheduler drained: {self.stats.to_dict()}")

    async def wait_for_division(self, division_code: int) -> None:
        """Wait until the division has nothing queued or in flight.

        Starts the workers if needed.

        Raises:
            SeedRequestFailed: The division's seed request failed for good.
        """
        self.start()
        await self._idle_event(division_code).wait()
        self.stats.peak_in_flight = self.concurrency.peak_in_flight
        error = self._errors.get(division_code)
        if error is not None:
            raise error

    def abort(self, division_code: int) -> None:
        """Stop dispatching the division's requests.

        Queued requests are discarded when dequeued; in-flight ones finish
        and their results are dropped.
        """
        if division_code not in self._aborted:
            self._aborted.add(division_code)
            logger.info(f"Aborted division {division_code}")

    def is_aborted(self, division_code: int) -> bool:
        return division_code in self._aborted

    def release_division(self, division_code: int) -> None:
        """Forget a finished division so it can be crawled again.

        While requests of the division are still queued or in flight the
        release is deferred until they are done, so an aborted division
        stays aborted until its last in-flight result is discarded.
        """
        if self.pending(division_code):
            self._release_when_idle.add(division_code)
            return
        self._release_when_idle.discard(division_code)
        self._seen.pop(division_code, None)
        self._aborted.discard(division_code)
        self._errors.pop(division_code, None)
        if division_code not in self._pending:
            self._idle.pop(division_code, None)

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            request = await self._queue.get()
            try:
                await self._process(request, worker_id)
            except Exception:
                logger.exception(
                    f"[W{worker_id}] Unexpected error processing "
                    f"{request.url}"
                )
                self.stats.failed += 1
            finally:
                self._finish(request)
                self._queue.task_done()

    async def _throttle(self) -> None:
        while not self._limiter.try_acquire("request"):
            await asyncio.sleep(0.05)

    async def _process(self, request: PageRequest, worker_id: int) -> None:
        if self.is_aborted(request.division_code):
            self.stats.discarded += 1
            logger.debug(f"[W{worker_id}] Discarded {request.url} (aborted)")
            return

        try:
            context = await self.anti_blocking.prepare(request)
        except ProxyTiersExhausted as e:
            await self._fail(request, e)
            return

        async with self.concurrency.slot():
            await self._throttle()
            if context.delay:
                await asyncio.sleep(context.delay)
            if self.is_aborted(request.division_code):
                self.stats.discarded += 1
                await self.anti_blocking.release(context, failed=False)
                return
            logger.debug(
                f"[W{worker_id}] {request.kind.value} {request.url} "
                f"(retry {request.retry_count}, tier {context.proxy_tier})"
            )
            try:
                response = await self.request_manager.fetch(
                    request.url,
                    headers=context.headers,
                    proxy=context.proxy_url,
                    request=context.request,
                )
                self.anti_blocking.raise_for_block(response, context)
            except TransientException as e:
                await self.anti_blocking.release(context, failed=True)
                await self._retry_or_fail(context, e)
                return
            await self.anti_blocking.release(context, failed=False)

        if self.is_aborted(request.division_code):
            self.stats.discarded += 1
            logger.debug(f"[W{worker_id}] Orphaned result for {request.url}")
            return
        if response.status_code >= 400:
            await self._fail(
                request,
                PageUnavailableException(request.url, response.status_code),
            )
            return
        await self._handle_response(request, response)
        self.stats.completed += 1

    async def _retry_or_fail(
        self, context: AttemptContext, error: TransientException
    ) -> None:
        request = context.request
        if request.retry_count >= self.max_request_retries:
            await self._fail(request, error)
            return
        retry = request.with_retry(
            escalate=self.anti_blocking.should_escalate(error, request)
        )
        self.stats.retried += 1
        logger.warning(
            f"Retrying {request.url} ({retry.retry_count}/"
            f"{self.max_request_retries}, tier {retry.proxy_tier}) after "
            f"{type(error).__name__}: {error}"
        )
        self._put(retry)

    async def _fail(self, request: PageRequest, error: Exception) -> None:
        failure = RequestFailed(
            url=request.url, retry_count=request.retry_count, cause=error
        )
        self.stats.failed += 1
        logger.error(
            f"Request failed permanently: {request.url} after "
            f"{request.retry_count} retries",
            extra={
                "url": request.url,
                "retry_count": request.retry_count,
                "division_code": request.division_code,
                "error_type": type(error).__name__,
            },
        )
        if request.is_seed:
            self._errors[request.division_code] = SeedRequestFailed(
                request.division_code, failure
            )
            self.abort(request.division_code)
        if self.on_request_failed:
            await self.on_request_failed(request, failure)

    async def _handle_response(
        self, request: PageRequest, response: Response
    ) -> None:
        match request.kind:
            case PageKind.LIST:
                await self._handle_list(request, response)
            case PageKind.DETAIL:
                await self._handle_detail(request, response)
            case _:
                assert_never(request.kind)

    async def _handle_list(
        self, request: PageRequest, response: Response
    ) -> None:
        list_page = parse_list_page(response.text, response.url)
        for detail in detail_requests(list_page, request.division_code):
            await self.enqueue(detail)
        follow = next_list_request(request, list_page.total_pages)
        if follow is not None:
            await self.enqueue(follow)
        logger.info(
            f"List page {request.page}/{list_page.total_pages} of "
            f"division {request.division_code}: "
            f"{len(list_page.school_links)} schools"
        )

    async def _handle_detail(
        self, request: PageRequest, response: Response
    ) -> None:
        assert request.pending_school is not None
        record = SchoolRecord.from_stub(
            request.pending_school,
            parse_detail_page(response.text),
            request.division_code,
        )
        if self.on_record:
            await self.on_record(record)
