"""Tests for enrollment/locks.py and enrollment/manager.py."""
from __future__ import annotations

import asyncio
from typing import Any

from careflow.core.constants import EnrollmentStatus, StepType, TriggerType
from careflow.core.types import (
    DuplicatePrevention,
    Enrollment,
    ExecutionContext,
    Step,
    WorkflowDefinition,
)
from careflow.enrollment import EnrollmentManager, KeyedLock
from careflow.enrollment.manager import SKIP_ACTIVE, SKIP_RECENT
from careflow.store.memory import InMemoryWorkflowRepository

ORG = "org-1"


def _make_definition(**overrides: Any) -> WorkflowDefinition:
    defaults: dict[str, Any] = {
        "id": "wf-1",
        "org_id": ORG,
        "name": "Post-visit follow-up",
        "trigger_type": TriggerType.APPOINTMENT_COMPLETED,
        "steps": [Step(id="s1", type=StepType.SEND_SMS, config={"template_id": "tpl-sms"})],
    }
    defaults.update(overrides)
    return WorkflowDefinition(**defaults)


async def _complete(repository: InMemoryWorkflowRepository, enrollment: Enrollment) -> None:
    await repository.update_enrollment(
        enrollment.model_copy(update={"status": EnrollmentStatus.COMPLETED})
    )


# ---------------------------------------------------------------------------
# KeyedLock
# ---------------------------------------------------------------------------


async def test_keyed_lock_serializes_same_key() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.acquire("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert locks.size == 0


async def test_keyed_lock_independent_keys() -> None:
    locks = KeyedLock()
    async with locks.acquire("a"):
        assert locks.locked("a")
        assert not locks.locked("b")
        async with locks.acquire("b"):
            assert locks.size == 2
    assert not locks.locked("a")
    assert locks.size == 0


# ---------------------------------------------------------------------------
# Enrollment creation
# ---------------------------------------------------------------------------


async def test_enroll_creates_active_enrollment(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)

    outcome = await manager.try_enroll(
        _make_definition(), "client-1", {"appointment_id": "appt-1"}, category="toxins"
    )

    assert outcome.enrolled
    enrollment = outcome.enrollment
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.cursor == 0
    assert enrollment.enrolled_at == clock.now
    assert enrollment.enrollment_reason == "appointment_completed_toxins"
    assert enrollment.metadata.category == "toxins"
    assert enrollment.metadata.trigger_type == TriggerType.APPOINTMENT_COMPLETED
    assert enrollment.context.data == {"appointment_id": "appt-1"}
    assert await repository.get_enrollment(enrollment.id) == enrollment


async def test_reason_without_category(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    outcome = await manager.try_enroll(
        _make_definition(), "client-1", trigger_type=TriggerType.MANUAL
    )
    assert outcome.enrollment.enrollment_reason == "manual"


async def test_execution_context_passed_through(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    ctx = ExecutionContext(data={"a": 1}, version=3)
    outcome = await manager.try_enroll(_make_definition(), "client-1", ctx)
    assert outcome.enrollment.context == ctx


async def test_listener_called_once_per_enrollment(repository, clock) -> None:
    seen: list[Enrollment] = []
    manager = EnrollmentManager(repository, on_enrolled=seen.append, clock=clock)

    await manager.try_enroll(_make_definition(), "client-1")
    await manager.try_enroll(_make_definition(), "client-1")

    assert len(seen) == 1


# ---------------------------------------------------------------------------
# Duplicate prevention
# ---------------------------------------------------------------------------


async def test_active_enrollment_blocks(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition(duplicate_prevention=DuplicatePrevention(enabled=False))

    await manager.try_enroll(definition, "client-1")
    outcome = await manager.try_enroll(definition, "client-1")

    assert not outcome.enrolled
    assert outcome.skipped_reason == SKIP_ACTIVE


async def test_recent_enrollment_blocks_within_window(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition()

    first = await manager.try_enroll(definition, "client-1")
    await _complete(repository, first.enrollment)
    clock.advance(days=10)
    outcome = await manager.try_enroll(definition, "client-1")

    assert outcome.skipped_reason == SKIP_RECENT
    assert len(await repository.list_enrollments(ORG)) == 1


async def test_window_expiry_allows_new_enrollment(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition(duplicate_prevention=DuplicatePrevention(lookback_days=30))

    first = await manager.try_enroll(definition, "client-1")
    await _complete(repository, first.enrollment)
    clock.advance(days=31)
    outcome = await manager.try_enroll(definition, "client-1")

    assert outcome.enrolled
    assert len(await repository.list_enrollments(ORG)) == 2


async def test_dedup_disabled_allows_after_completion(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition(duplicate_prevention=DuplicatePrevention(enabled=False))

    first = await manager.try_enroll(definition, "client-1")
    await _complete(repository, first.enrollment)
    outcome = await manager.try_enroll(definition, "client-1")

    assert outcome.enrolled


async def test_lookback_ignored_when_not_respected(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition()

    first = await manager.try_enroll(definition, "client-1")
    await _complete(repository, first.enrollment)
    outcome = await manager.try_enroll(definition, "client-1", respect_lookback=False)

    assert outcome.enrolled


async def test_different_clients_do_not_block(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition()

    a = await manager.try_enroll(definition, "client-1")
    b = await manager.try_enroll(definition, "client-2")

    assert a.enrolled and b.enrolled


# ---------------------------------------------------------------------------
# Restart
# ---------------------------------------------------------------------------


async def test_restart_cancels_active_and_enrolls(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition(restart_if_active=True)

    first = await manager.try_enroll(definition, "client-1")
    clock.advance(hours=1)
    second = await manager.try_enroll(definition, "client-1")

    assert second.enrolled
    assert second.cancelled == [first.enrollment.id]
    old = await repository.get_enrollment(first.enrollment.id)
    assert old.status == EnrollmentStatus.CANCELLED
    assert old.completed_at == clock.now
    active = await repository.find_active_enrollments(ORG, "wf-1", "client-1")
    assert [e.id for e in active] == [second.enrollment.id]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


async def test_concurrent_enrollments_create_one(repository, clock) -> None:
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition()

    outcomes = await asyncio.gather(
        *(manager.try_enroll(definition, "client-1") for _ in range(5))
    )

    assert sum(1 for o in outcomes if o.enrolled) == 1
    assert len(await repository.list_enrollments(ORG)) == 1


class _BlindRepository(InMemoryWorkflowRepository):
    """Repository whose lookups never see active enrollments."""

    async def find_active_enrollments(self, org_id, workflow_id, client_id):
        return []


async def test_store_conflict_is_a_skip(clock) -> None:
    repository = _BlindRepository()
    manager = EnrollmentManager(repository, clock=clock)
    definition = _make_definition(duplicate_prevention=DuplicatePrevention(enabled=False))

    first = await manager.try_enroll(definition, "client-1")
    second = await manager.try_enroll(definition, "client-1")

    assert first.enrolled
    assert second.skipped_reason == SKIP_ACTIVE
