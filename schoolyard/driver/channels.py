"""Output channels that receive a job's serialized result.

A channel reaches exactly one terminal state: closed after the complete
JSON array was written, or aborted with the error that ended the job.
Terminal calls after the first are ignored; writes after it raise.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from enum import Enum
from typing import Any, Protocol

from schoolyard.data_types import SchoolRecord

logger = logging.getLogger(__name__)


def serialize_records(records: Iterable[SchoolRecord]) -> bytes:
    """JSON array of records using their public field names."""
    return json.dumps([r.to_json_dict() for r in records]).encode("utf-8")


class ChannelState(Enum):
    OPEN = "open"
    CLOSED = "closed"
    ABORTED = "aborted"


class ChannelClosedError(RuntimeError):
    """Raised when writing to a channel that already reached a terminal state."""


class OutputChannel(Protocol):
    """Write side of a job's result stream."""

    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...

    def abort(self, error: BaseException) -> None: ...


class _BaseChannel:
    def __init__(self) -> None:
        self.state = ChannelState.OPEN
        self.error: BaseException | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not ChannelState.OPEN

    def _check_writable(self) -> None:
        if self.is_terminal:
            raise ChannelClosedError(f"Channel is {self.state.value}")

    def _terminate(self, state: ChannelState) -> bool:
        if self.is_terminal:
            logger.debug(
                f"Ignoring {state.value} on {self.state.value} channel"
            )
            return False
        self.state = state
        return True


class BufferedChannel(_BaseChannel):
    """Collects everything written in memory."""

    def __init__(self) -> None:
        super().__init__()
        self._chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        self._check_writable()
        self._chunks.append(data)

    def close(self) -> None:
        self._terminate(ChannelState.CLOSED)

    def abort(self, error: BaseException) -> None:
        if self._terminate(ChannelState.ABORTED):
            self.error = error

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def json(self) -> Any:
        """The buffered bytes decoded as JSON."""
        return json.loads(self.getvalue())


_END = object()


class StreamingChannel(_BaseChannel):
    """Hands written chunks to an async consumer.

    Iterating yields chunks until the channel closes; if it was aborted the
    iteration raises the abort error after the chunks written before it.

    Example::

        channel = StreamingChannel()
        async for chunk in channel:
            await send(chunk)
    """

    def __init__(self) -> None:
        super().__init__()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def write(self, data: bytes) -> None:
        self._check_writable()
        self._queue.put_nowait(data)

    def close(self) -> None:
        if self._terminate(ChannelState.CLOSED):
            self._queue.put_nowait(_END)

    def abort(self, error: BaseException) -> None:
        if self._terminate(ChannelState.ABORTED):
            self.error = error
            self._queue.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is _END:
                break
            yield item
        if self.error is not None:
            raise self.error
