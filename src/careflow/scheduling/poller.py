"""Resumes enrollments whose persisted delay has elapsed."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from careflow.core.constants import EnrollmentStatus
from careflow.core.types import utcnow
from careflow.store.base import WorkflowRepository

logger = structlog.get_logger(__name__)


class ResumePoller:
    """Periodically hands due enrollments back to the execution engine.

    Delays are stored as ``next_run_at`` on the enrollment, so nothing sleeps
    in memory and pending delays survive a restart.

    Args:
        repository: Source of due enrollments.
        dispatch: Called with the id of each enrollment to resume. Must not
            block.
        interval: Seconds between polls of the background loop.
        batch_size: Maximum enrollments resumed per poll.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatch: Callable[[str], Any],
        *,
        interval: float = 60.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._dispatch = dispatch
        self._interval = interval
        self._batch_size = batch_size
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> list[str]:
        """Dispatch every enrollment due at *now*; return their ids."""
        due = await self._repository.list_due_enrollments(
            now or self._clock(), limit=self._batch_size
        )
        for enrollment in due:
            self._dispatch(enrollment.id)
        if due:
            logger.info("enrollments_resumed", count=len(due))
        return [enrollment.id for enrollment in due]

    async def recover(self) -> list[str]:
        """Re-dispatch active enrollments that were running when the process stopped.

        Enrollments waiting on a delay are left to :meth:`run_once`.
        """
        active = await self._repository.list_enrollments(status=EnrollmentStatus.ACTIVE)
        interrupted = [e.id for e in active if e.next_run_at is None]
        for enrollment_id in interrupted:
            self._dispatch(enrollment_id)
        if interrupted:
            logger.info("enrollments_recovered", count=len(interrupted))
        return interrupted

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name="careflow-resume-poller"
        )
        logger.info("poller_started", interval=self._interval)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("poller_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("poller_error", error=str(exc))
            await asyncio.sleep(self._interval)
