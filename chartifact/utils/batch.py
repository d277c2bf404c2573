"""Bounded worker pool for batch operations over many channels.

Each item runs under a shared semaphore; a failing item never cancels its
siblings. Results come back in input order, one per item, with the error
text attached to the item that raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemResult(Generic[T, R]):
    """Outcome of one batch entry."""

    item: T
    value: R | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int = 4,
) -> list[ItemResult[T, R]]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight."""
    semaphore = asyncio.Semaphore(max(1, limit))
    entries = list(items)

    async def _run(index: int, item: T) -> ItemResult[T, R]:
        async with semaphore:
            try:
                return ItemResult(item=item, value=await worker(item))
            except Exception as e:
                # an exception with no message still marks the item failed
                error = str(e) or type(e).__name__
                logger.warning("batch_item_failed", index=index, error=error)
                return ItemResult(item=item, error=error)

    return list(await asyncio.gather(*[_run(i, item) for i, item in enumerate(entries)]))
