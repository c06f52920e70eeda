"""Enrollment decisions: duplicate prevention, restart and creation.

All checks for one (client, workflow) pair run under a per-pair lock so two
events arriving together cannot both pass the "no active enrollment" check.
The repository enforces the same rule again at the storage level; a conflict
reported there is treated as a skip.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field

from careflow.core.constants import EnrollmentStatus, TriggerType
from careflow.core.exceptions import EnrollmentConflictError
from careflow.core.types import (
    Enrollment,
    EnrollmentMetadata,
    ExecutionContext,
    WorkflowDefinition,
    utcnow,
)
from careflow.enrollment.locks import KeyedLock
from careflow.store.base import WorkflowRepository

logger = structlog.get_logger(__name__)

SKIP_ACTIVE = "active_enrollment"
SKIP_RECENT = "recently_enrolled"


class EnrollmentOutcome(BaseModel):
    """Result of :meth:`EnrollmentManager.try_enroll`.

    Exactly one of ``enrollment`` / ``skipped_reason`` is set.
    ``cancelled`` lists enrollments ended by a restart.
    """

    enrollment: Enrollment | None = None
    skipped_reason: str | None = None
    cancelled: list[str] = Field(default_factory=list)

    @property
    def enrolled(self) -> bool:
        return self.enrollment is not None


class EnrollmentManager:
    """Creates enrollments while honouring duplicate prevention and restart.

    Args:
        repository: Engine persistence.
        on_enrolled: Called with each new enrollment once it is stored. Must
            not block; the automation engine uses it to dispatch the run.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        *,
        on_enrolled: Callable[[Enrollment], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._on_enrolled = on_enrolled
        self._clock = clock
        self._locks = KeyedLock()

    async def try_enroll(
        self,
        definition: WorkflowDefinition,
        client_id: str,
        context: ExecutionContext | Mapping[str, Any] | None = None,
        *,
        trigger_type: TriggerType | None = None,
        category: str | None = None,
        respect_lookback: bool = True,
        metadata: EnrollmentMetadata | None = None,
    ) -> EnrollmentOutcome:
        """Enroll *client_id* in *definition* unless duplicate prevention says no.

        A recent enrollment inside the lookback window, or any still-active
        enrollment, blocks a new one. With ``restart_if_active`` the active
        enrollments are cancelled instead and a fresh one is created.
        ``respect_lookback=False`` ignores the window but never the
        single-active rule.
        """
        trigger = trigger_type or definition.trigger_type
        log = logger.bind(
            org_id=definition.org_id, workflow_id=definition.id, client_id=client_id
        )

        async with self._locks.acquire((definition.org_id, client_id, definition.id)):
            now = self._clock()
            active = await self._repository.find_active_enrollments(
                definition.org_id, definition.id, client_id
            )
            recent: Enrollment | None = None
            prevention = definition.duplicate_prevention
            if prevention.enabled and respect_lookback:
                recent = await self._repository.find_latest_enrollment(
                    definition.org_id,
                    definition.id,
                    client_id,
                    since=now - timedelta(days=prevention.lookback_days),
                )

            if (active or recent) and not definition.restart_if_active:
                reason = SKIP_ACTIVE if active else SKIP_RECENT
                log.info("enrollment_skipped", reason=reason)
                return EnrollmentOutcome(skipped_reason=reason)

            cancelled: list[str] = []
            for existing in active:
                if await self._repository.cancel_enrollment(existing.id, now) is None:
                    continue
                cancelled.append(existing.id)
                log.info("enrollment_cancelled_for_restart", enrollment_id=existing.id)

            if not isinstance(context, ExecutionContext):
                context = ExecutionContext(data=dict(context or {}))
            meta = (metadata or EnrollmentMetadata()).model_copy(
                update={"trigger_type": trigger, "category": category}
            )
            enrollment = Enrollment(
                org_id=definition.org_id,
                workflow_id=definition.id,
                client_id=client_id,
                status=EnrollmentStatus.ACTIVE,
                enrollment_reason=f"{trigger}_{category}" if category else str(trigger),
                enrolled_at=now,
                context=context,
                metadata=meta,
                definition=definition,
            )
            try:
                await self._repository.insert_enrollment(enrollment)
            except EnrollmentConflictError:
                log.info("enrollment_skipped", reason=SKIP_ACTIVE, source="store")
                return EnrollmentOutcome(skipped_reason=SKIP_ACTIVE, cancelled=cancelled)

        log.info(
            "client_enrolled",
            enrollment_id=enrollment.id,
            reason=enrollment.enrollment_reason,
            restarted=bool(cancelled),
        )
        if self._on_enrolled is not None:
            self._on_enrolled(enrollment)
        return EnrollmentOutcome(enrollment=enrollment, cancelled=cancelled)
