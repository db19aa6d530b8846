"""FastAPI front door for division scrapes.

Endpoints:
- ``POST /scrape``: body ``{"divisionCode": int, "forceRefresh": bool}``,
  returns ``{"divisionCode", "schools", "count"}``
- ``GET /divisions/{code}/schools?force_refresh=``: streams the JSON array

Crawl errors map to 409 (a job for the division is already running) and
502 (the crawl failed).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Annotated, Any

import httpx
from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from schoolyard.common.exceptions import CrawlJobException, JobAlreadyRunning
from schoolyard.config import CrawlerConfig
from schoolyard.driver.channels import StreamingChannel
from schoolyard.orchestrator import Orchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


class ScrapeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    division_code: int = Field(..., alias="divisionCode")
    force_refresh: bool = Field(False, alias="forceRefresh")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the orchestrator for the lifetime of the app."""
    config: CrawlerConfig = app.state.config
    db_path: Path | str = app.state.db_path
    transport: httpx.AsyncBaseTransport | None = getattr(
        app.state, "transport", None
    )
    async with Orchestrator.open(
        config, db_path, transport=transport
    ) as orchestrator:
        app.state.orchestrator = orchestrator
        logger.info(f"Serving division scrapes from {config.base_url}")
        yield
    app.state.orchestrator = None


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def _job_already_running(
    request: Request, exc: Exception
) -> JSONResponse:
    assert isinstance(exc, JobAlreadyRunning)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": exc.message, "divisionCode": exc.division_code},
    )


async def _crawl_failed(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, CrawlJobException)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": exc.message, "divisionCode": exc.division_code},
    )


async def scrape(
    body: ScrapeRequest,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
) -> dict[str, Any]:
    records = await orchestrator.scrape_records(
        body.division_code, force_refresh=body.force_refresh
    )
    return {
        "divisionCode": body.division_code,
        "schools": [r.to_json_dict() for r in records],
        "count": len(records),
    }


async def stream_division(
    code: int,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    force_refresh: bool = False,
) -> StreamingResponse:
    """Stream a division's records as one JSON array.

    The first chunk is awaited before the response starts, so a failed or
    rejected job still maps to an error status.
    """
    channel = StreamingChannel()
    task = asyncio.create_task(
        orchestrator.scrape(code, channel, force_refresh=force_refresh)
    )
    chunks = channel.__aiter__()
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = b""
    except BaseException:
        with suppress(CrawlJobException):
            await task
        raise

    async def body() -> AsyncIterator[bytes]:
        try:
            if first:
                yield first
            async for chunk in chunks:
                yield chunk
        finally:
            if not task.done():
                task.cancel()
            with suppress(asyncio.CancelledError, CrawlJobException):
                await task

    return StreamingResponse(body(), media_type="application/json")


def create_app(
    config: CrawlerConfig | None = None,
    db_path: Path | str = "schoolyard.db",
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Crawler configuration; read from the environment if None.
        db_path: SQLite database for the cache and job records.
        transport: Optional httpx transport for outgoing requests.
    """
    app = FastAPI(
        title="schoolyard",
        description="Division school directory scraper",
        lifespan=lifespan,
    )
    app.state.config = config or CrawlerConfig.from_env()
    app.state.db_path = db_path
    app.state.transport = transport

    app.add_exception_handler(JobAlreadyRunning, _job_already_running)
    app.add_exception_handler(CrawlJobException, _crawl_failed)
    app.add_api_route("/scrape", scrape, methods=["POST"])
    app.add_api_route(
        "/divisions/{code}/schools", stream_division, methods=["GET"]
    )
    return app
