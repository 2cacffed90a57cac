"""Strictly serialized task runner guarding the reserve state."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

LOGGER = logging.getLogger("token_liquidity.settlement_queue")

T = TypeVar("T")

_STOP = object()


class SettlementQueue:
    """
    FIFO runner that executes at most one task at a time.

    Every task that touches the reserve state or issues a ledger write runs
    here, so the queue doubles as the mutual-exclusion lock for the state.
    A task that has started always runs to completion: cancelling the caller
    awaiting its future does not cancel the task itself.

    Example:
        queue = SettlementQueue()
        result = await queue.run(lambda: settle(event))
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self._running = False

    @property
    def size(self) -> int:
        """Number of tasks waiting to start."""
        return self._queue.qsize()

    @property
    def busy(self) -> bool:
        return self._running

    def submit(self, task: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        if self._closed:
            raise RuntimeError("Settlement queue is closed.")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._queue.put_nowait((task, future))
        self._ensure_worker()
        return future

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        future = self.submit(task)
        # Shield so a cancelled caller leaves the task running to completion.
        return await asyncio.shield(future)

    async def close(self) -> None:
        """Let queued tasks finish, then stop the worker."""
        if self._closed:
            return
        self._closed = True
        if self._worker is None:
            return
        self._queue.put_nowait(_STOP)
        await self._worker
        self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._work(), name="settlement-queue-worker"
            )

    async def _work(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            task, future = item
            self._running = True
            try:
                result = await task()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
                else:
                    LOGGER.error("Queued task failed after its caller left: %s", exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._running = False
