"""Job registry: one active crawl job per division.

The registry maps a division code to its CrawlJob. A job owns a record
store named ``schools-{code}-{uuid}`` and one or more output channels.
Records from concurrent DETAIL completions are appended through the
store's lock; the job is finalized exactly once, on success or failure,
which drains and drops the store and brings every channel to a terminal
state.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from schoolyard.cache.stores import RecordStore
from schoolyard.common.exceptions import (
    CrawlJobException,
    JobAborted,
    JobAlreadyRunning,
    StoreUnavailable,
)
from schoolyard.data_types import SchoolRecord, cache_key
from schoolyard.driver.channels import OutputChannel, serialize_records

logger = logging.getLogger(__name__)

StoreOpener = Callable[[str], Awaitable[RecordStore]]
FinalizeHook = Callable[["CrawlJob", list[SchoolRecord]], Awaitable[None]]


class JoinPolicy(str, Enum):
    """What a second start for an already running division does."""

    REJECT = "reject"
    JOIN = "join"


@dataclass
class CrawlJob:
    """State of one in-flight division crawl.

    Attributes:
        division_code: The division being crawled.
        store: Temporary record store for this job only.
        channel: Channel of the caller that started the job.
        followers: Channels of callers that joined it.
        fingerprint: Fingerprint to persist with the result, if known.
        failed_requests: Requests that failed permanently.
        error: Job-fatal error, set when the job fails.
    """

    division_code: int
    store: RecordStore
    channel: OutputChannel
    followers: list[OutputChannel] = field(default_factory=list)
    fingerprint: str | None = None
    failed_requests: int = 0
    started_at: float = field(default_factory=time.monotonic)
    error: BaseException | None = None
    records: list[SchoolRecord] = field(default_factory=list)
    finalized: bool = False
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def channels(self) -> list[OutputChannel]:
        return [self.channel, *self.followers]

    def owned_by(self, channel: OutputChannel) -> bool:
        return self.channel is channel

    def _complete(
        self, records: list[SchoolRecord], error: BaseException | None
    ) -> None:
        self.records = records
        self.error = error
        self._done.set()

    async def wait(self) -> list[SchoolRecord]:
        """Wait for finalization and return the records or raise its error."""
        await self._done.wait()
        if self.error is not None:
            raise self.error
        return self.records


class JobRegistry:
    """Lock-guarded map of division code to running CrawlJob.

    Args:
        open_store: Opens a record store by name.
        join_policy: Behavior for a concurrent start of the same division.
        on_finalize: Awaited with the job and its records after a
            successful drain and before channels are closed. An error it
            raises fails the job.
    """

    def __init__(
        self,
        open_store: StoreOpener,
        join_policy: JoinPolicy = JoinPolicy.REJECT,
        on_finalize: FinalizeHook | None = None,
    ) -> None:
        self._open_store = open_store
        self.join_policy = join_policy
        self.on_finalize = on_finalize
        self._jobs: dict[int, CrawlJob] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, division_code: int) -> bool:
        return division_code in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def active_divisions(self) -> list[int]:
        return sorted(self._jobs)

    async def get(self, division_code: int) -> CrawlJob | None:
        async with self._lock:
            return self._jobs.get(division_code)

    async def start_job(
        self, division_code: int, channel: OutputChannel
    ) -> CrawlJob:
        """Register a job for the division, or join the running one.

        Raises:
            JobAlreadyRunning: A job is active and the policy is REJECT.
            StoreUnavailable: The record store could not be opened.
        """
        async with self._lock:
            existing = self._jobs.get(division_code)
            if existing is not None:
                if self.join_policy is JoinPolicy.REJECT:
                    raise JobAlreadyRunning(division_code)
                existing.followers.append(channel)
                logger.info(
                    f"Joined running job for division {division_code} "
                    f"({len(existing.followers)} follower(s))"
                )
                return existing

            name = f"{cache_key(division_code)}-{uuid.uuid4().hex}"
            try:
                store = await self._open_store(name)
            except (SQLAlchemyError, OSError) as e:
                raise StoreUnavailable(division_code, str(e)) from e
            job = CrawlJob(
                division_code=division_code, store=store, channel=channel
            )
            self._jobs[division_code] = job
            logger.info(f"Started job for division {division_code} ({name})")
            return job

    async def record_result(
        self, division_code: int, record: SchoolRecord
    ) -> bool:
        """Append a record to the division's job.

        Returns:
            False when no job is registered for the division (an orphaned
            completion) or the store rejected the write.
        """
        async with self._lock:
            job = self._jobs.get(division_code)
        if job is None or job.finalized:
            logger.warning(
                f"Discarding orphaned record for division {division_code}: "
                f"{record.name}"
            )
            return False
        try:
            await job.store.push(record)
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(
                f"Record store write failed for division {division_code}: {e}"
            )
            if job.error is None:
                job.error = StoreUnavailable(division_code, str(e))
            return False
        return True

    async def record_failure(self, division_code: int) -> None:
        async with self._lock:
            job = self._jobs.get(division_code)
            if job is not None:
                job.failed_requests += 1

    async def finalize_job(
        self, division_code: int, error: BaseException | None = None
    ) -> list[SchoolRecord]:
        """Finish the division's job exactly once.

        On success the store is drained, ``on_finalize`` runs, and the JSON
        array is written to every channel before closing it. On failure
        every channel is aborted with the error. Either way the store is
        dropped and the job removed. A second call returns ``[]``.

        Args:
            division_code: Division whose job ends.
            error: Job-fatal error, or None for a successful drain.

        Returns:
            The job's records; ``[]`` when the job failed.
        """
        async with self._lock:
            job = self._jobs.pop(division_code, None)
            if job is None or job.finalized:
                return []
            job.finalized = True

        error = error or job.error
        records: list[SchoolRecord] = []
        try:
            if error is None:
                records = await job.store.get_all()
                if self.on_finalize:
                    await self.on_finalize(job, records)
        except CrawlJobException as e:
            error = e
        except (SQLAlchemyError, RuntimeError) as e:
            error = StoreUnavailable(division_code, str(e))
        except Exception as e:
            logger.exception(
                f"Finalize hook failed for division {division_code}"
            )
            error = JobAborted(
                division_code, f"finalize failed: {type(e).__name__}: {e}"
            )
        finally:
            try:
                await job.store.drop()
            except SQLAlchemyError:
                logger.exception(
                    f"Failed to drop record store for division {division_code}"
                )

        if error is None:
            payload = serialize_records(records)
            for channel in job.channels:
                channel.write(payload)
                channel.close()
            logger.info(
                f"Finalized division {division_code}: {len(records)} records, "
                f"{job.failed_requests} failed request(s) in "
                f"{time.monotonic() - job.started_at:.1f}s"
            )
        else:
            records = []
            for channel in job.channels:
                channel.abort(error)
            logger.error(f"Division {division_code} job failed: {error}")

        job._complete(records, error)
        return records
