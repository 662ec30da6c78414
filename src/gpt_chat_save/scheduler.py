# Copyright (C) 2025 Torsten Knodt and contributors
# GNU General Public License
# SPDX-License-Identifier: GPL-3.0-or-later

"""Cooperative batch scheduling for long turn lists.

All work runs on one event loop. The scheduler processes items strictly one
after another and hands control back to the loop once per batch through an
injected yield primitive, so tests never depend on wall-clock timers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 10

YieldFn = Callable[[], Awaitable[Any]]
ProgressFn = Callable[[int, int], Any]


async def yield_to_loop() -> None:
    """Default yield primitive: let other ready tasks run once."""
    await asyncio.sleep(0)


class BatchScheduler:
    """Run a transform over items in fixed-size chunks, yielding between chunks."""

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        yield_fn: YieldFn | None = None,
        on_progress: ProgressFn | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.yield_fn = yield_fn or yield_to_loop
        self.on_progress = on_progress

    def batches(self, items: Sequence[T]) -> list[Sequence[T]]:
        return [items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    async def run(
        self, items: Sequence[T], transform: Callable[[T], R | Awaitable[R]]
    ) -> list[R]:
        """Transform every item in input order and return the results in that order."""
        total = len(items)
        if total == 0:
            return []

        LOGGER.debug(
            "Scheduling %d item(s) in %d batch(es) of %d",
            total, math.ceil(total / self.batch_size), self.batch_size,
        )
        results: list[R] = []
        for index, batch in enumerate(self.batches(items)):
            for item in batch:
                result = transform(item)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)

            processed = min((index + 1) * self.batch_size, total)
            LOGGER.debug("Batch %d done: %d/%d", index + 1, processed, total)
            if self.on_progress is not None:
                self.on_progress(processed, total)
            await self.yield_fn()
        return results


async def process_in_batches(
    items: Sequence[T],
    transform: Callable[[T], R | Awaitable[R]],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    yield_fn: YieldFn | None = None,
    on_progress: ProgressFn | None = None,
) -> list[R]:
    """Convenience wrapper around :class:`BatchScheduler`."""
    scheduler = BatchScheduler(batch_size=batch_size, yield_fn=yield_fn, on_progress=on_progress)
    return await scheduler.run(items, transform)
