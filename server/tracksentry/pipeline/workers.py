"""
Key-sharded worker pool.

Every item is submitted with an ordering key.  A key always
hashes to the same worker, and each worker drains its own
bounded queue one item at a time, so items sharing a key are
handled strictly in submission order while different keys
proceed concurrently on other workers.
"""

from __future__ import annotations

import asyncio
import zlib
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

from tracksentry.utils import errors, logger

log = logger.create_logger("Workers")

T = TypeVar("T")
R = TypeVar("R")


def shard_for(key: Hashable, shards: int) -> int:
    """Stable shard index for *key* (independent of hash randomisation)."""
    return zlib.crc32(repr(key).encode("utf-8")) % shards


class ShardedWorkerPool(Generic[T, R]):
    """Fixed set of single-consumer queues feeding one handler."""

    def __init__(self, handler: Callable[[T], Awaitable[R]], workers: int = 4, queue_size: int = 1000) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._handler = handler
        self.workers = workers
        self.queue_size = queue_size
        self._queues: list[asyncio.Queue[tuple[T, asyncio.Future[R]]]] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.workers)]
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"pipeline-worker-{index}") for index in range(self.workers)
        ]
        log.debug("Worker pool started", {"workers": self.workers, "queueSize": self.queue_size})

    async def submit(self, key: Hashable, item: T) -> asyncio.Future[R]:
        """Queue *item* on its key's worker; waits while that queue is full.

        Returns a future resolved with the handler's result.

        Raises:
            EngineNotReadyError: If the pool has not been started.
        """
        if not self._tasks:
            raise errors.EngineNotReadyError("worker pool is not running")
        future: asyncio.Future[R] = asyncio.get_running_loop().create_future()
        await self._queues[shard_for(key, self.workers)].put((item, future))
        return future

    async def _run(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            item, future = await queue.get()
            try:
                result = await self._handler(item)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                queue.task_done()
                raise
            except Exception as exc:
                log.error("Pipeline worker failed", {"worker": index, "error": errors.get_error_message(exc)})
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            queue.task_done()

    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues)

    async def join(self) -> None:
        """Wait until every queued item has been handled."""
        await asyncio.gather(*(q.join() for q in self._queues))

    async def stop(self) -> None:
        """Cancel the workers; anything still queued is cancelled too."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for queue in self._queues:
            while not queue.empty():
                _, future = queue.get_nowait()
                queue.task_done()
                if not future.done():
                    future.cancel()
        log.debug("Worker pool stopped")
