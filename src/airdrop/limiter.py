"""Bounded worker pool with a single completion consumer.

Workers take items off a queue in input order, so at most ``window`` items are
in flight. Each finished item becomes a ``Completion`` on a second queue that
exactly one task drains; ``on_complete`` therefore never runs concurrently
with itself and may mutate shared state without locking.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

log = logging.getLogger("airdrop.limiter")

T = TypeVar("T")
R = TypeVar("R")

_DONE = object()


@dataclass(slots=True)
class Completion(Generic[T, R]):
    item: T
    result: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Iterable[T],
    window: int,
    worker: Callable[[T], Awaitable[R]],
    on_complete: Callable[[Completion[T, R]], Any] | None = None,
) -> list[Completion[T, R]]:
    """Run ``worker`` over ``items`` with at most ``window`` in flight.

    A worker exception is captured in its Completion and never cancels the
    siblings. ``on_complete`` may be sync or async; if it raises, the pool is
    torn down and the error propagates (used for checkpoint failures).
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")

    pending: asyncio.Queue = asyncio.Queue()
    for item in items:
        pending.put_nowait(item)
    n_items = pending.qsize()
    n_workers = min(window, n_items)
    completions: asyncio.Queue = asyncio.Queue()
    collected: list[Completion[T, R]] = []

    async def work(wid: int) -> None:
        while True:
            try:
                item = pending.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                c = Completion(item=item, result=await worker(item))
            except Exception as e:
                log.error("worker %s: unhandled %s on %s: %s", wid, type(e).__name__, item, e)
                c = Completion(item=item, error=e)
            await completions.put(c)
        await completions.put(_DONE)

    async def consume() -> None:
        finished = 0
        while finished < n_workers:
            c = await completions.get()
            if c is _DONE:
                finished += 1
                continue
            collected.append(c)
            if on_complete is not None:
                r = on_complete(c)
                if asyncio.iscoroutine(r):
                    await r

    if n_items == 0:
        return collected

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(consume(), name="completion-consumer")
            for wid in range(n_workers):
                tg.create_task(work(wid), name=f"worker-{wid}")
    except BaseExceptionGroup as eg:
        # Only the consumer can fail; surface its error unwrapped.
        raise eg.exceptions[0] from None

    return collected
