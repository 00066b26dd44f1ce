"""Offset/limit paging helpers for the web API."""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")


async def iter_offset_batches(
    fetch_page: Callable[[int, int], Awaitable[list[T]]],
    *,
    batch_size: int,
    start: int = 0,
) -> AsyncIterator[tuple[int, list[T]]]:
    """
    Yield ``(offset, page)`` pairs until the source runs dry.

    Stops on an empty page or one shorter than ``batch_size``.
    """
    offset = start
    while True:
        page = await fetch_page(offset, batch_size)
        if not page:
            return

        yield offset, page

        if len(page) < batch_size:
            return

        offset += batch_size


async def collect_all(
    fetch_page: Callable[[int, int], Awaitable[list[Any]]],
    *,
    batch_size: int,
) -> list[Any]:
    """Concatenate every page yielded by :func:`iter_offset_batches`."""
    results: list[Any] = []
    async for _, page in iter_offset_batches(fetch_page, batch_size=batch_size):
        results.extend(page)
    return results
