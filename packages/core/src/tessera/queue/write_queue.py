"""Single-consumer queue that runs registry writes one at a time."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tessera.errors import DuplicateWriteRaceError

logger = logging.getLogger("tessera.queue.write_queue")

T = TypeVar("T")

WriteOperation = Callable[[], Awaitable[Any]]


class SerializedWriteQueue:
    """FIFO actor for mutations of a shared document.

    Callers ``submit`` a coroutine factory and await its result. One
    worker task runs the operations strictly in arrival order; a failed
    operation resolves its caller's future with the original exception
    and the worker moves on to the next request.
    """

    def __init__(self, name: str = "registry") -> None:
        self._name = name
        self._queue: asyncio.Queue[tuple[WriteOperation, asyncio.Future[Any]] | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._active = False
        self._processed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def processed(self) -> int:
        return self._processed

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name=f"{self._name}-write-queue")
        logger.info("Write queue '%s' started", self._name)

    async def stop(self) -> None:
        """Finish everything already submitted, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
        logger.info("Write queue '%s' stopped after %d writes", self._name, self._processed)

    async def submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue *operation* and wait for its result (or its exception)."""
        if not self.running:
            raise RuntimeError(f"Write queue '{self._name}' is not running")
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put((operation, future))
        return await future

    async def _run(self) -> None:
        current: asyncio.Future[Any] | None = None
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item is None:
                        return
                    operation, current = item
                    if current.cancelled():
                        continue
                    await self._execute(operation, current)
                    current = None
                finally:
                    self._queue.task_done()
        except BaseException:
            logger.error("Write queue '%s' worker exited abnormally", self._name)
            self._fail_pending(current)
            raise

    def _fail_pending(self, current: asyncio.Future[Any] | None) -> None:
        """Resolve every waiting caller once the worker can no longer serve them."""
        futures = [current] if current is not None else []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is not None:
                futures.append(item[1])
        for future in futures:
            if not future.done():
                future.set_exception(RuntimeError(f"Write queue '{self._name}' stopped"))

    async def _execute(self, operation: WriteOperation, future: asyncio.Future[Any]) -> None:
        if self._active:
            error = DuplicateWriteRaceError(f"Overlapping writes on queue '{self._name}'")
            logger.error("%s", error.message)
            if not future.done():
                future.set_exception(error)
            raise error
        self._active = True
        try:
            result = await operation()
        except Exception as exc:
            logger.warning("Write on queue '%s' failed: %s", self._name, exc)
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._active = False
            self._processed += 1
