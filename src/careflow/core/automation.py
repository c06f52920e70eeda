"""AutomationEngine: the single entry point applications talk to."""
from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

import httpx
import structlog

from careflow.core.config import EngineConfig
from careflow.core.constants import Channel, TriggerType
from careflow.core.dispatch import TaskDispatcher
from careflow.core.exceptions import (
    AppointmentNotFoundError,
    CareflowError,
    ClientNotFoundError,
    DuplicateEnrollmentError,
    ExecutionNotFoundError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from careflow.core.types import (
    Enrollment,
    EnrollmentMetadata,
    ExecutionStatus,
    TriggerEvent,
    TriggerReport,
    WorkflowDefinition,
    utcnow,
)
from careflow.enrollment.manager import EnrollmentManager
from careflow.messaging.providers import ProviderChain, build_provider_chains
from careflow.messaging.service import MessageDeliveryService
from careflow.scheduling.poller import ResumePoller
from careflow.store.base import RecordStore, WorkflowRepository
from careflow.store.sqlite import SQLiteWorkflowRepository
from careflow.triggers.evaluator import TriggerEvaluator
from careflow.triggers.mapping import (
    AppointmentCategorizer,
    map_appointment_change,
    map_client_change,
)
from careflow.utils.logging import configure_logging
from careflow.workflows.engine import StepExecutionEngine

logger = structlog.get_logger(__name__)


class AutomationEngine:
    """Wires triggers, enrollment, execution, delivery and delay resumption.

    Event handlers return as soon as enrollments are created; the step runs
    happen in detached tasks owned by :attr:`dispatcher`.

    Usage::

        async with await AutomationEngine.from_config(records=my_store) as engine:
            await engine.save_workflow(definition)
            await engine.on_appointment_event(org_id, appointment_id, "completed")

    Args:
        records: CRM record store.
        repository: Engine persistence.
        chains: Provider chain per channel.
        config: Engine configuration; defaults to :class:`EngineConfig`.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        records: RecordStore,
        repository: WorkflowRepository,
        chains: Mapping[Channel, ProviderChain],
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or EngineConfig()
        self.records = records
        self.repository = repository
        self.dispatcher = TaskDispatcher()
        self.delivery = MessageDeliveryService(
            records, repository, chains, self.config.default_variables
        )
        self.executor = StepExecutionEngine(
            repository,
            records,
            self.delivery,
            default_variables=self.config.default_variables,
            clock=clock,
        )
        self.enrollments = EnrollmentManager(
            repository, on_enrolled=self._dispatch_enrollment, clock=clock
        )
        self.triggers = TriggerEvaluator(
            repository,
            records,
            self.enrollments,
            AppointmentCategorizer(self.config.appointment_categories),
        )
        self.poller = ResumePoller(
            repository,
            self._dispatch_run,
            interval=self.config.poll_interval_seconds,
            clock=clock,
        )
        self._cleanup: list[Callable[[], Awaitable[None]]] = []

    @classmethod
    async def from_config(
        cls,
        config: EngineConfig | None = None,
        *,
        records: RecordStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> AutomationEngine:
        """Build an engine backed by SQLite and the configured providers.

        ``config`` defaults to :meth:`EngineConfig.from_env`. The engine owns
        the SQLite connection and the shared HTTP client and closes both in
        :meth:`close`.
        """
        config = config or EngineConfig.from_env()
        configure_logging(level=config.log_level, json=config.log_json)

        repository = SQLiteWorkflowRepository(config.database)
        await repository.connect()
        http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
        chains = build_provider_chains(config, http_client)

        engine = cls(records, repository, chains, config=config, clock=clock)
        engine._cleanup.extend([http_client.aclose, repository.close])
        return engine

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Re-dispatch interrupted enrollments and start the resume poller."""
        await self.poller.recover()
        self.poller.start()
        logger.info("automation_engine_started")

    async def close(self) -> None:
        await self.poller.stop()
        await self.dispatcher.close()
        for cleanup in self._cleanup:
            await cleanup()
        self._cleanup.clear()
        logger.info("automation_engine_closed")

    async def __aenter__(self) -> AutomationEngine:
        await self.start()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # -- dispatch -----------------------------------------------------------

    def _dispatch_run(self, enrollment_id: str) -> None:
        self.dispatcher.submit(
            self.executor.run(enrollment_id), name=f"enrollment-{enrollment_id}"
        )

    def _dispatch_enrollment(self, enrollment: Enrollment) -> None:
        self._dispatch_run(enrollment.id)

    # -- definitions --------------------------------------------------------

    async def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        await self.repository.save_definition(definition)
        logger.info(
            "workflow_saved",
            org_id=definition.org_id,
            workflow_id=definition.id,
            trigger_type=definition.trigger_type,
            steps=len(definition.steps),
        )
        return definition

    # -- events -------------------------------------------------------------

    async def on_appointment_event(
        self,
        org_id: str,
        appointment_id: str,
        change_type: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TriggerReport | None:
        """Handle an appointment status change.

        Returns ``None`` when *change_type* maps to no trigger.

        Raises:
            AppointmentNotFoundError: The appointment does not exist.
        """
        trigger = map_appointment_change(change_type)
        if trigger is None:
            logger.debug("appointment_change_ignored", change_type=change_type)
            return None

        appointment = await self.records.get_appointment(org_id, appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(
                f"Appointment {appointment_id} not found in org {org_id}",
                code="APPOINTMENT_NOT_FOUND",
            )

        payload: dict[str, Any] = {
            "title": appointment.title,
            "appointment_status": appointment.status,
            "change_type": change_type,
            **(metadata or {}),
        }
        if appointment.start_time is not None:
            payload["appointment_start"] = appointment.start_time.isoformat()

        event = TriggerEvent(
            org_id=org_id,
            trigger_type=trigger,
            client_id=appointment.client_id,
            appointment_id=appointment.id,
            appointment_type=appointment.type or None,
            payload=payload,
        )
        return await self.triggers.evaluate(event)

    async def on_client_event(
        self,
        org_id: str,
        client_id: str,
        change_type: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TriggerReport | None:
        """Handle a client change. Returns ``None`` for unmapped change types."""
        trigger = map_client_change(change_type)
        if trigger is None:
            logger.debug("client_change_ignored", change_type=change_type)
            return None

        event = TriggerEvent(
            org_id=org_id,
            trigger_type=trigger,
            client_id=client_id,
            payload={"change_type": change_type, **(metadata or {})},
        )
        return await self.triggers.evaluate(event)

    # -- explicit invocation ------------------------------------------------

    async def execute_workflow(
        self,
        org_id: str,
        workflow_id: str,
        trigger_type: TriggerType | str | None = None,
        context_data: Mapping[str, Any] | None = None,
    ) -> str:
        """Enroll a client in a workflow directly and return the execution id.

        The lookback window is not applied, but a client never holds two
        active enrollments in the same workflow unless the definition
        restarts.

        Raises:
            WorkflowNotFoundError: Unknown workflow.
            WorkflowInactiveError: The workflow is switched off.
            ClientNotFoundError: ``context_data["client_id"]`` does not exist.
            DuplicateEnrollmentError: The client already has an active enrollment.
        """
        definition = await self.repository.get_definition(org_id, workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(
                f"Workflow {workflow_id} not found in org {org_id}",
                code="WORKFLOW_NOT_FOUND",
            )
        if not definition.is_active:
            raise WorkflowInactiveError(
                f"Workflow {workflow_id} is inactive", code="WORKFLOW_INACTIVE"
            )

        data = dict(context_data or {})
        client_id = data.get("client_id")
        if not client_id:
            raise CareflowError(
                "context_data must include client_id", code="CLIENT_ID_REQUIRED"
            )
        client_id = str(client_id)
        client = await self.records.get_client(org_id, client_id)
        if client is None:
            raise ClientNotFoundError(
                f"Client {client_id} not found in org {org_id}", code="CLIENT_NOT_FOUND"
            )

        trigger = TriggerType(trigger_type) if trigger_type else TriggerType.MANUAL
        context = {
            **data,
            "org_id": org_id,
            "client_id": client_id,
            "workflow_id": workflow_id,
            "trigger_type": str(trigger),
        }
        context.setdefault("client", client.model_dump(mode="json"))

        outcome = await self.enrollments.try_enroll(
            definition,
            client_id,
            context,
            trigger_type=trigger,
            category=data.get("category"),
            respect_lookback=False,
            metadata=EnrollmentMetadata(
                appointment_id=data.get("appointment_id"), extra={"manual": True}
            ),
        )
        if outcome.enrollment is None:
            raise DuplicateEnrollmentError(
                f"Client {client_id} is already enrolled in workflow {workflow_id}",
                code="DUPLICATE_ENROLLMENT",
                details={"reason": outcome.skipped_reason},
            )
        return outcome.enrollment.id

    async def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        """Current enrollment state plus its full, ordered execution log.

        Raises:
            ExecutionNotFoundError: Unknown execution id.
        """
        enrollment = await self.repository.get_enrollment(execution_id)
        if enrollment is None:
            raise ExecutionNotFoundError(
                f"Execution {execution_id} not found", code="EXECUTION_NOT_FOUND"
            )
        definition = enrollment.definition or await self.repository.get_definition(
            enrollment.org_id, enrollment.workflow_id
        )
        return ExecutionStatus(
            enrollment_id=enrollment.id,
            workflow_id=enrollment.workflow_id,
            client_id=enrollment.client_id,
            status=enrollment.status,
            cursor=enrollment.cursor,
            step_count=len(definition.steps) if definition else 0,
            next_run_at=enrollment.next_run_at,
            completed_at=enrollment.completed_at,
            log=await self.repository.list_logs(enrollment.id),
        )
