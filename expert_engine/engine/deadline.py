"""Caller-side deadlines for pipeline runs.

A deadline cancels whatever I/O call is in flight and surfaces as
PipelineTimeoutError. Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from typing import TypeVar

from expert_engine.engine.errors import PipelineTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_deadline(awaitable: Awaitable[T], seconds: float | None) -> T:
    if seconds is None:
        return await awaitable
    try:
        async with asyncio.timeout(seconds):
            return await awaitable
    except TimeoutError as e:
        logger.warning("Pipeline exceeded its %.1fs deadline", seconds)
        raise PipelineTimeoutError(f"Pipeline timed out after {seconds:g}s") from e


async def stream_with_deadline(
    events: AsyncIterator[T],
    seconds: float | None,
) -> AsyncIterator[T]:
    """
    Re-yield `events` until a shared time budget is spent.

    The deadline only covers time spent producing events, so a slow
    consumer cannot make the pipeline time out.
    """
    if seconds is None:
        async for event in events:
            yield event
        return

    loop = asyncio.get_running_loop()
    remaining = seconds
    iterator = aiter(events)
    while True:
        started = loop.time()
        try:
            async with asyncio.timeout(remaining):
                event = await anext(iterator)
        except StopAsyncIteration:
            return
        except TimeoutError as e:
            logger.warning("Streamed pipeline exceeded its %.1fs deadline", seconds)
            raise PipelineTimeoutError(f"Pipeline timed out after {seconds:g}s") from e
        remaining -= loop.time() - started
        yield event
