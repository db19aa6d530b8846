"""Entry point tying the cache, job registry and scheduler together.

``Orchestrator.scrape`` checks the change-detection cache, serves cached
records when the division is unchanged, and otherwise runs a crawl job:
seed the scheduler with the first list page, wait for the division to
drain, persist the new cache entry and write the records to the caller's
channel. The caller gets either the complete record set or an error; the
channel is always closed or aborted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx

from schoolyard.cache.freshness import ChangeDetectionCache
from schoolyard.cache.stores import StorageBackend
from schoolyard.common.exceptions import (
    CrawlJobException,
    JobAborted,
    RequestFailed,
)
from schoolyard.common.headers import HeaderSynthesizer
from schoolyard.common.request_manager import AsyncRequestManager
from schoolyard.config import CrawlerConfig
from schoolyard.data_types import PageKind, PageRequest, SchoolRecord
from schoolyard.driver.anti_blocking import (
    AntiBlockingLayer,
    SessionPool,
    TieredProxyConfiguration,
)
from schoolyard.driver.channels import (
    BufferedChannel,
    OutputChannel,
    serialize_records,
)
from schoolyard.driver.jobs import CrawlJob, JobRegistry
from schoolyard.driver.scheduler import RequestScheduler

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs division scrapes on one shared scheduler.

    Example::

        async with Orchestrator.open(CrawlerConfig(), "schoolyard.db") as orc:
            records = await orc.scrape_records(98)
    """

    def __init__(
        self,
        config: CrawlerConfig,
        storage: StorageBackend,
        request_manager: AsyncRequestManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.request_manager = request_manager or AsyncRequestManager(
            timeout=config.request_timeout
        )
        headers = HeaderSynthesizer(config.profile, rng=rng)
        proxies = TieredProxyConfiguration(config.proxy_tiers)
        self.anti_blocking = AntiBlockingLayer(
            proxies=proxies,
            sessions=SessionPool(proxies, config.session_max_usage),
            headers=headers,
            min_delay=config.min_delay,
            max_delay=config.max_delay,
            rng=rng,
        )
        self.cache = ChangeDetectionCache(
            storage.cache,
            self.request_manager,
            strategy=config.fingerprint_strategy,
            base_url=config.base_url,
            headers=headers,
        )
        self.registry = JobRegistry(
            storage.open_record_store,
            join_policy=config.join_policy,
            on_finalize=self._persist,
        )
        self.scheduler = RequestScheduler(
            self.request_manager,
            self.anti_blocking,
            max_concurrency=config.max_concurrency,
            max_requests_per_minute=config.max_requests_per_minute,
            max_request_retries=config.max_request_retries,
            max_memory_ratio=config.max_memory_ratio,
            on_record=self._on_record,
            on_request_failed=self._on_request_failed,
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: CrawlerConfig,
        db_path: Path | str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AsyncIterator[Orchestrator]:
        """Open storage and HTTP clients, yielding a ready orchestrator."""
        async with StorageBackend.open(db_path) as storage:
            manager = AsyncRequestManager(
                timeout=config.request_timeout, transport=transport
            )
            orchestrator = cls(config, storage, request_manager=manager)
            try:
                yield orchestrator
            finally:
                await orchestrator.close()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.request_manager.close()

    # -------------------------------------------------------------------------
    # Scheduler and registry callbacks
    # -------------------------------------------------------------------------

    async def _on_record(self, record: SchoolRecord) -> None:
        await self.registry.record_result(record.division_code, record)

    async def _on_request_failed(
        self, request: PageRequest, failure: RequestFailed
    ) -> None:
        await self.registry.record_failure(request.division_code)

    async def _persist(
        self, job: CrawlJob, records: list[SchoolRecord]
    ) -> None:
        fingerprint = job.fingerprint
        if fingerprint is None:
            fingerprint = await self.cache.current_fingerprint(
                job.division_code
            )
        await self.cache.persist(job.division_code, fingerprint, records)

    # -------------------------------------------------------------------------
    # Scrape
    # -------------------------------------------------------------------------

    def seed_request(self, division_code: int) -> PageRequest:
        return PageRequest(
            url=self.config.list_url(division_code),
            kind=PageKind.LIST,
            division_code=division_code,
            page=1,
        )

    async def scrape(
        self,
        division_code: int,
        channel: OutputChannel,
        force_refresh: bool = False,
    ) -> list[SchoolRecord]:
        """Scrape a division, writing the JSON record array to ``channel``.

        Args:
            division_code: Division to scrape.
            channel: Receives the result, then is closed or aborted.
            force_refresh: Skip the freshness check and always crawl.

        Returns:
            The division's records.

        Raises:
            CrawlJobException: The job failed (seed failure, store error,
                rejected duplicate job).
        """
        fingerprint: str | None = None
        try:
            if not force_refresh:
                freshness = await self.cache.check_freshness(division_code)
                if freshness.fresh and freshness.cached is not None:
                    entry = await self.cache.refresh(freshness.cached)
                    channel.write(serialize_records(entry.data))
                    channel.close()
                    return entry.data
                fingerprint = freshness.fingerprint
            job = await self.registry.start_job(division_code, channel)
        except asyncio.CancelledError:
            logger.warning(
                f"Scrape of division {division_code} cancelled before crawl"
            )
            channel.abort(JobAborted(division_code, "caller disconnected"))
            raise
        except CrawlJobException as e:
            channel.abort(e)
            raise

        if not job.owned_by(channel):
            return await job.wait()
        job.fingerprint = fingerprint
        return await self._crawl(job)

    async def _crawl(self, job: CrawlJob) -> list[SchoolRecord]:
        code = job.division_code
        try:
            if not await self.scheduler.enqueue(self.seed_request(code)):
                raise JobAborted(
                    code, "requests of an aborted crawl are still draining"
                )
            await self.scheduler.wait_for_division(code)
        except asyncio.CancelledError:
            logger.warning(f"Scrape of division {code} cancelled by caller")
            self.scheduler.abort(code)
            await self.registry.finalize_job(
                code, JobAborted(code, "caller disconnected")
            )
            raise
        except CrawlJobException as e:
            await self.registry.finalize_job(code, e)
            raise
        finally:
            self.scheduler.release_division(code)

        records = await self.registry.finalize_job(code)
        if job.error is not None:
            raise job.error
        return records

    async def scrape_records(
        self, division_code: int, force_refresh: bool = False
    ) -> list[SchoolRecord]:
        """Scrape into a throwaway BufferedChannel and return the records."""
        return await self.scrape(
            division_code, BufferedChannel(), force_refresh=force_refresh
        )
