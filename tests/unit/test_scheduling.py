"""Tests for scheduling/poller.py and core/dispatch.py."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from careflow.core.constants import EnrollmentStatus
from careflow.core.dispatch import TaskDispatcher
from careflow.core.types import Enrollment
from careflow.scheduling import ResumePoller

ORG = "org-1"


def _make_enrollment(client_id: str, **overrides) -> Enrollment:
    return Enrollment(org_id=ORG, workflow_id="wf-1", client_id=client_id, **overrides)


# ---------------------------------------------------------------------------
# ResumePoller
# ---------------------------------------------------------------------------


async def test_run_once_dispatches_due_enrollments(repository, clock) -> None:
    due = await repository.insert_enrollment(
        _make_enrollment("c1", next_run_at=clock.now - timedelta(minutes=1))
    )
    await repository.insert_enrollment(
        _make_enrollment("c2", next_run_at=clock.now + timedelta(hours=1))
    )
    await repository.insert_enrollment(_make_enrollment("c3"))
    dispatched: list[str] = []
    poller = ResumePoller(repository, dispatched.append, clock=clock)

    assert await poller.run_once() == [due.id]
    assert dispatched == [due.id]


async def test_run_once_respects_batch_size(repository, clock) -> None:
    for i in range(3):
        await repository.insert_enrollment(_make_enrollment(f"c{i}", next_run_at=clock.now))
    dispatched: list[str] = []
    poller = ResumePoller(repository, dispatched.append, batch_size=2, clock=clock)

    await poller.run_once()

    assert len(dispatched) == 2


async def test_recover_dispatches_interrupted_only(repository, clock) -> None:
    interrupted = await repository.insert_enrollment(_make_enrollment("c1"))
    await repository.insert_enrollment(
        _make_enrollment("c2", next_run_at=clock.now + timedelta(hours=1))
    )
    await repository.insert_enrollment(
        _make_enrollment("c3", status=EnrollmentStatus.COMPLETED)
    )
    dispatched: list[str] = []
    poller = ResumePoller(repository, dispatched.append, clock=clock)

    assert await poller.recover() == [interrupted.id]
    assert dispatched == [interrupted.id]


async def test_start_and_stop_background_loop(repository, clock) -> None:
    due = await repository.insert_enrollment(_make_enrollment("c1", next_run_at=clock.now))
    seen = asyncio.Event()
    dispatched: list[str] = []

    def dispatch(enrollment_id: str) -> None:
        dispatched.append(enrollment_id)
        seen.set()

    poller = ResumePoller(repository, dispatch, interval=0.01, clock=clock)
    poller.start()
    poller.start()
    assert poller.running

    await asyncio.wait_for(seen.wait(), timeout=1)
    await poller.stop()

    assert not poller.running
    assert dispatched[0] == due.id


# ---------------------------------------------------------------------------
# TaskDispatcher
# ---------------------------------------------------------------------------


async def test_dispatcher_runs_and_drains() -> None:
    dispatcher = TaskDispatcher()
    results: list[int] = []

    async def work(n: int) -> None:
        await asyncio.sleep(0)
        results.append(n)

    for n in range(3):
        dispatcher.submit(work(n))
    await dispatcher.drain()

    assert sorted(results) == [0, 1, 2]
    assert dispatcher.pending == 0


async def test_dispatcher_drain_waits_for_chained_tasks() -> None:
    dispatcher = TaskDispatcher()
    results: list[str] = []

    async def child() -> None:
        results.append("child")

    async def parent() -> None:
        dispatcher.submit(child())
        results.append("parent")

    dispatcher.submit(parent())
    await dispatcher.drain()

    assert results == ["parent", "child"]


async def test_dispatcher_isolates_failures() -> None:
    dispatcher = TaskDispatcher()

    async def boom() -> None:
        raise RuntimeError("boom")

    task = dispatcher.submit(boom(), name="boom")
    await dispatcher.drain()

    assert task.result() is None


async def test_closed_dispatcher_rejects_work() -> None:
    dispatcher = TaskDispatcher()
    await dispatcher.close()

    async def noop() -> None:
        return None

    with pytest.raises(RuntimeError, match="closed"):
        dispatcher.submit(noop())


async def test_close_with_cancel() -> None:
    dispatcher = TaskDispatcher()

    async def forever() -> None:
        await asyncio.Event().wait()

    task = dispatcher.submit(forever())
    await asyncio.sleep(0)
    await dispatcher.close(cancel=True)

    assert task.cancelled()
