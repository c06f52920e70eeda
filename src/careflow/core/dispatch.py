"""Detached background execution of enrollment runs."""
from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class TaskDispatcher:
    """Runs coroutines as tracked, detached asyncio tasks.

    Event producers hand work off here and return immediately. Exceptions
    escaping a task are logged and never propagate back to the producer.

    Example::

        dispatcher = TaskDispatcher()
        dispatcher.submit(engine.run(enrollment.id))
        await dispatcher.drain()
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        """Schedule *coro* on the running loop. Must be called from within it."""
        if self._closed:
            coro.close()
            raise RuntimeError("TaskDispatcher is closed")
        task = asyncio.get_running_loop().create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any], name: str | None) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("dispatched_task_failed", task=name, error=str(exc), exc_info=True)
            return None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted task (including ones submitted meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, *, cancel: bool = False) -> None:
        """Stop accepting work, then drain (or cancel) outstanding tasks."""
        self._closed = True
        if cancel:
            for task in list(self._tasks):
                task.cancel()
        await self.drain()
        logger.debug("dispatcher_closed")
