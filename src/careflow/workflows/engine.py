"""Step execution engine: runs one enrollment's steps from its cursor.

Each run walks the definition's ordered steps starting at the persisted
cursor. Every step ends in exactly one execution-log entry (``executed``,
``skipped`` or ``failed``) and the cursor only ever moves forward, so a run
can stop at any point (delay, crash, cancellation) and resume later without
re-executing a logged step.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog

from careflow.conditions.evaluator import evaluate
from careflow.core.constants import EnrollmentStatus, LogOutcome
from careflow.core.exceptions import EnrollmentConflictError, StepSkipped
from careflow.core.types import (
    Enrollment,
    ExecutionLogEntry,
    Step,
    WorkflowDefinition,
    utcnow,
)
from careflow.enrollment.locks import KeyedLock
from careflow.messaging.service import MessageDeliveryService
from careflow.store.base import RecordStore, WorkflowRepository
from careflow.utils.logging import bind_enrollment, clear_enrollment
from careflow.workflows.actions import HANDLERS, StepContext, StepHandler, step_delay

logger = structlog.get_logger(__name__)


class RunOutcome(StrEnum):
    """Why a call to :meth:`StepExecutionEngine.run` returned."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    NOT_FOUND = "not_found"
    ALREADY_RUNNING = "already_running"


class StepExecutionEngine:
    """Executes enrollments step by step.

    Steps of one enrollment run strictly in sequence; a per-enrollment lock
    rejects a second concurrent run of the same enrollment. Different
    enrollments are independent and may run concurrently.

    Args:
        repository: Definitions, enrollments and the execution log.
        records: CRM record store handed to step handlers.
        delivery: Message delivery service for ``send_*`` steps.
        default_variables: Org-level merge variables.
        clock: Source of "now", injectable for tests.
        handlers: Override of the step handler table.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        records: RecordStore,
        delivery: MessageDeliveryService,
        *,
        default_variables: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
        handlers: Mapping[Any, StepHandler] | None = None,
    ) -> None:
        self._repository = repository
        self._records = records
        self._delivery = delivery
        self._defaults = dict(default_variables or {})
        self._clock = clock
        self._handlers = dict(handlers or HANDLERS)
        self._running = KeyedLock()

    async def run(self, enrollment_id: str) -> RunOutcome:
        """Run *enrollment_id* until it completes, fails, is cancelled or waits."""
        if self._running.locked(enrollment_id):
            logger.debug("enrollment_already_running", enrollment_id=enrollment_id)
            return RunOutcome.ALREADY_RUNNING

        async with self._running.acquire(enrollment_id):
            enrollment = await self._repository.get_enrollment(enrollment_id)
            if enrollment is None:
                logger.warning("enrollment_not_found", enrollment_id=enrollment_id)
                return RunOutcome.NOT_FOUND

            bind_enrollment(enrollment.id, enrollment.workflow_id, enrollment.org_id)
            try:
                return await self._run(enrollment)
            finally:
                clear_enrollment()

    async def _run(self, enrollment: Enrollment) -> RunOutcome:
        if enrollment.status.is_terminal:
            return RunOutcome(enrollment.status.value)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            return RunOutcome.CANCELLED

        definition = enrollment.definition
        if definition is None:
            # Enrollments stored without a snapshot pin the current definition
            # on their first run.
            definition = await self._repository.get_definition(
                enrollment.org_id, enrollment.workflow_id
            )
            if definition is None:
                logger.error("workflow_definition_missing")
                stopped = await self._finish(enrollment, EnrollmentStatus.FAILED)
                return stopped or RunOutcome.FAILED
            stopped = await self._advance(enrollment, definition=definition)
            if stopped is not None:
                return stopped

        steps = definition.ordered_steps
        logger.debug("enrollment_run_started", cursor=enrollment.cursor, step_count=len(steps))

        while True:
            # Re-read before every step so a restart's cancellation is seen.
            current = await self._repository.get_enrollment(enrollment.id)
            if current is None or current.status != EnrollmentStatus.ACTIVE:
                logger.info("enrollment_stopped", status=current.status if current else None)
                return RunOutcome.CANCELLED
            enrollment = current

            if enrollment.cursor >= len(steps):
                stopped = await self._finish(enrollment, EnrollmentStatus.COMPLETED)
                if stopped is not None:
                    return stopped
                logger.info("enrollment_completed", step_count=len(steps))
                return RunOutcome.COMPLETED

            outcome = await self._step(definition, enrollment, steps[enrollment.cursor])
            if outcome is not None:
                return outcome

    async def _step(
        self, definition: WorkflowDefinition, enrollment: Enrollment, step: Step
    ) -> RunOutcome | None:
        """Advance one step. ``None`` means continue with the next one."""
        cursor = enrollment.cursor
        now = self._clock()
        log = logger.bind(step_id=step.id, step_type=step.type, cursor=cursor)

        if step.conditions and not evaluate(step.conditions, enrollment.context):
            await self._append(enrollment, step, LogOutcome.SKIPPED, "Step conditions not met")
            log.info("step_skipped", reason="conditions")
            return await self._advance(enrollment, cursor=cursor + 1)

        try:
            delay = step_delay(step)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(enrollment, step, exc)

        if delay > timedelta(0):
            if enrollment.delayed_cursor != cursor:
                due = now + delay
                stopped = await self._advance(enrollment, next_run_at=due, delayed_cursor=cursor)
                if stopped is not None:
                    return stopped
                log.info("step_delayed", resume_at=due.isoformat())
                return RunOutcome.SUSPENDED
            if enrollment.next_run_at is not None and enrollment.next_run_at > now:
                return RunOutcome.SUSPENDED
            if enrollment.next_run_at is not None:
                stopped = await self._advance(enrollment, next_run_at=None)
                if stopped is not None:
                    return stopped
                enrollment = enrollment.model_copy(update={"next_run_at": None})

        handler = self._handlers.get(step.type)
        ctx = StepContext(
            enrollment=enrollment,
            context=enrollment.context,
            records=self._records,
            delivery=self._delivery,
            default_variables=self._defaults,
            now=now,
        )
        try:
            if handler is None:
                raise LookupError(f"No handler for step type {step.type}")
            result = await handler.execute(step, ctx)
        except StepSkipped as skip:
            await self._append(
                enrollment, step, LogOutcome.SKIPPED, str(skip), result=skip.result
            )
            log.info("step_skipped", reason=str(skip))
            return await self._advance(enrollment, cursor=cursor + 1)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(enrollment, step, exc)

        await self._append(
            enrollment, step, LogOutcome.EXECUTED, result.message, result=result.data
        )
        log.info("step_executed", message=result.message)
        return await self._advance(
            enrollment,
            cursor=cursor + 1,
            context=enrollment.context.merge(result.context_updates),
        )

    # -- persistence helpers ------------------------------------------------

    async def _append(
        self,
        enrollment: Enrollment,
        step: Step,
        outcome: LogOutcome,
        message: str,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        await self._repository.append_log(
            ExecutionLogEntry(
                org_id=enrollment.org_id,
                enrollment_id=enrollment.id,
                workflow_id=enrollment.workflow_id,
                step_id=step.id,
                step_type=step.type,
                cursor=enrollment.cursor,
                timestamp=self._clock(),
                outcome=outcome,
                message=message,
                result=result,
                error=error,
            )
        )

    async def _advance(self, enrollment: Enrollment, **update: Any) -> RunOutcome | None:
        """Persist *update* unless the enrollment stopped being active meanwhile."""
        try:
            stored = await self._repository.update_active_enrollment(
                enrollment.model_copy(update=update)
            )
        except EnrollmentConflictError:
            stored = False
        if not stored:
            logger.info("enrollment_stopped", cursor=enrollment.cursor)
            return RunOutcome.CANCELLED
        return None

    async def _fail(self, enrollment: Enrollment, step: Step, exc: Exception) -> RunOutcome:
        await self._append(
            enrollment,
            step,
            LogOutcome.FAILED,
            f"Step {step.id} failed",
            error=str(exc),
        )
        logger.error(
            "step_failed",
            step_id=step.id,
            step_type=step.type,
            cursor=enrollment.cursor,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        stopped = await self._finish(enrollment, EnrollmentStatus.FAILED)
        return stopped or RunOutcome.FAILED

    async def _finish(self, enrollment: Enrollment, status: EnrollmentStatus) -> RunOutcome | None:
        return await self._advance(
            enrollment,
            status=status,
            completed_at=self._clock(),
            next_run_at=None,
        )
