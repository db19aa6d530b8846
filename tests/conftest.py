"""Shared fixtures for the crawler tests."""

import asyncio
import socket
import threading
import time
from collections.abc import AsyncGenerator, Generator
from contextlib import closing
from pathlib import Path

import pytest
from aiohttp import web

from schoolyard.cache.stores import StorageBackend
from schoolyard.config import CrawlerConfig
from schoolyard.orchestrator import Orchestrator
from tests.mock_server import DirectoryState, create_app


def find_free_port() -> int:
    """Find a free port on localhost.

    Returns:
        An available port number.
    """
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class AioHttpTestServer:
    """Wrapper to run aiohttp server in a background thread."""

    def __init__(self, app: web.Application, port: int) -> None:
        self.app = app
        self.port = port
        self.host = "127.0.0.1"
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: web.AppRunner | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    @property
    def url(self) -> str:
        """Get the base URL of the server."""
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        """Start the server in a background thread."""
        self._thread = threading.Thread(target=self._run_server, daemon=True)
        self._thread.start()
        self._started.wait(timeout=5.0)
        time.sleep(0.05)

    def _run_server(self) -> None:
        """Run the server in an asyncio event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        async def start() -> None:
            self._runner = web.AppRunner(self.app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.host, self.port)
            await site.start()

        self._loop.run_until_complete(start())
        self._started.set()
        self._loop.run_forever()

    def stop(self) -> None:
        """Stop the server and clean up resources."""
        if self._loop and self._runner:
            runner = self._runner
            future = asyncio.run_coroutine_threadsafe(
                runner.cleanup(), self._loop
            )
            try:
                future.result(timeout=2.0)
            except (TimeoutError, RuntimeError):
                pass  # Best effort cleanup

        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread:
            self._thread.join(timeout=2.0)


@pytest.fixture
def directory() -> DirectoryState:
    """Behavior and counters of the mock directory."""
    return DirectoryState()


@pytest.fixture
def directory_server(
    directory: DirectoryState,
) -> Generator[AioHttpTestServer, None, None]:
    """Start the mock directory on a random port.

    Yields:
        AioHttpTestServer instance with the directory app running.
    """
    server = AioHttpTestServer(create_app(directory), find_free_port())
    server.start()
    yield server
    server.stop()


@pytest.fixture
def server_url(directory_server: AioHttpTestServer) -> str:
    """Get the base URL of the test server (e.g. "http://127.0.0.1:8080")."""
    return directory_server.url


@pytest.fixture
def base_url(server_url: str) -> str:
    """List URL template pointing at the mock directory."""
    return f"{server_url}/virginia-schools?division={{division_code}}"


@pytest.fixture
def config(base_url: str) -> CrawlerConfig:
    """Crawler config for fast tests: no politeness delay, one retry."""
    return CrawlerConfig(
        base_url=base_url,
        max_concurrency=4,
        max_requests_per_minute=10_000,
        max_request_retries=1,
        request_timeout=5.0,
        min_delay=0.0,
        max_delay=0.0,
    )


@pytest.fixture
async def storage(tmp_path: Path) -> AsyncGenerator[StorageBackend, None]:
    """Storage backend on a fresh SQLite file."""
    async with StorageBackend.open(tmp_path / "test.db") as backend:
        yield backend


@pytest.fixture
async def orchestrator(
    config: CrawlerConfig, storage: StorageBackend
) -> AsyncGenerator[Orchestrator, None]:
    """Orchestrator against the mock directory."""
    orc = Orchestrator(config, storage)
    try:
        yield orc
    finally:
        await orc.close()
