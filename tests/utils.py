"""Test utilities for the crawler tests."""

from collections.abc import Awaitable, Callable
from typing import Any

from schoolyard.common.exceptions import RequestFailed
from schoolyard.data_types import PageKind, PageRequest, SchoolStub


def collect_results_async() -> tuple[
    Callable[[Any], Awaitable[None]], list[Any]
]:
    """Create an async callback that collects results in a list.

    Returns:
        A tuple of (async_callback_function, results_list).

    Example:
        callback, records = collect_results_async()
        scheduler = RequestScheduler(manager, layer, on_record=callback)
        await scheduler.run()
        assert len(records) > 0
    """
    results: list[Any] = []

    async def callback(data: Any) -> None:
        results.append(data)

    return callback, results


def collect_failures_async() -> tuple[
    Callable[[PageRequest, RequestFailed], Awaitable[None]],
    list[tuple[PageRequest, RequestFailed]],
]:
    """Like collect_results_async, for ``on_request_failed``."""
    failures: list[tuple[PageRequest, RequestFailed]] = []

    async def callback(request: PageRequest, failure: RequestFailed) -> None:
        failures.append((request, failure))

    return callback, failures


def seed(base_url: str, division_code: int) -> PageRequest:
    """Seed LIST request for a division on the given URL template."""
    return PageRequest(
        url=base_url.format(division_code=division_code),
        kind=PageKind.LIST,
        division_code=division_code,
    )


def detail(
    url: str, division_code: int = 98, name: str = "Test School"
) -> PageRequest:
    """A DETAIL request carrying a stub named ``name``."""
    return PageRequest(
        url=url,
        kind=PageKind.DETAIL,
        division_code=division_code,
        pending_school=SchoolStub(
            name=name, division="Test Division", grade_span="K-5"
        ),
    )
