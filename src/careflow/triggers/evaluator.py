"""Selects the definitions an event activates and enrolls the client."""

from __future__ import annotations

from typing import Any

import structlog

from careflow.core.exceptions import ClientNotFoundError
from careflow.core.types import (
    Client,
    EnrollmentMetadata,
    TriggerEvent,
    TriggerReport,
    WorkflowDefinition,
)
from careflow.enrollment.manager import EnrollmentManager
from careflow.store.base import RecordStore, WorkflowRepository
from careflow.triggers.mapping import AppointmentCategorizer

logger = structlog.get_logger(__name__)


class TriggerEvaluator:
    """Matches business events against active workflow definitions.

    Failures are isolated per definition: one broken definition (or a client
    that disappeared) is reported in :attr:`TriggerReport.errors` and never
    stops the others from being evaluated.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        records: RecordStore,
        enrollment: EnrollmentManager,
        categorizer: AppointmentCategorizer | None = None,
    ) -> None:
        self._repository = repository
        self._records = records
        self._enrollment = enrollment
        self._categorizer = categorizer or AppointmentCategorizer()

    def categorize(self, event: TriggerEvent) -> str | None:
        title = event.payload.get("title")
        if not event.appointment_type and not title:
            return None
        return self._categorizer.categorize(event.appointment_type, title)

    @staticmethod
    def definition_matches(
        definition: WorkflowDefinition,
        event: TriggerEvent,
        client: Client | None,
        category: str | None = None,
    ) -> bool:
        """Trigger type, activity and allow-lists; absent allow-lists match all."""
        if not definition.is_active or definition.trigger_type != event.trigger_type:
            return False

        allowed_types = definition.match.appointment_types
        if allowed_types:
            if not event.appointment_type:
                return False
            candidates = {event.appointment_type.lower()}
            if category:
                candidates.add(category.lower())
            if not candidates & {t.lower() for t in allowed_types}:
                return False

        allowed_tags = definition.match.client_tags
        if allowed_tags:
            tags = set(client.tags) if client is not None else set()
            if not tags & set(allowed_tags):
                return False

        return True

    async def matching_definitions(
        self, event: TriggerEvent, client: Client | None = None
    ) -> list[WorkflowDefinition]:
        definitions = await self._repository.list_definitions(
            event.org_id, trigger_type=event.trigger_type, active_only=True
        )
        category = self.categorize(event)
        return [d for d in definitions if self.definition_matches(d, event, client, category)]

    async def evaluate(self, event: TriggerEvent) -> TriggerReport:
        """Enroll the event's client in every matching definition."""
        report = TriggerReport(trigger_type=event.trigger_type)
        category = self.categorize(event)
        definitions = await self._repository.list_definitions(
            event.org_id, trigger_type=event.trigger_type, active_only=True
        )
        log = logger.bind(
            org_id=event.org_id, trigger_type=event.trigger_type, client_id=event.client_id
        )
        log.debug("trigger_evaluating", candidates=len(definitions), category=category)

        for definition in definitions:
            try:
                client = await self._records.get_client(event.org_id, event.client_id)
                if client is None:
                    raise ClientNotFoundError(
                        f"Client {event.client_id} not found in org {event.org_id}",
                        code="CLIENT_NOT_FOUND",
                    )
                if not self.definition_matches(definition, event, client, category):
                    continue
                report.matched.append(definition.id)

                outcome = await self._enrollment.try_enroll(
                    definition,
                    event.client_id,
                    self._initial_context(event, client, category),
                    trigger_type=event.trigger_type,
                    category=category,
                    metadata=EnrollmentMetadata(
                        appointment_id=event.appointment_id, extra=dict(event.payload)
                    ),
                )
                if outcome.enrollment is not None:
                    report.enrolled.append(outcome.enrollment)
                else:
                    report.skipped[definition.id] = outcome.skipped_reason or "skipped"
            except Exception as exc:  # noqa: BLE001
                log.error("trigger_definition_error", workflow_id=definition.id, error=str(exc))
                report.errors[definition.id] = str(exc)

        log.info(
            "trigger_evaluated",
            matched=len(report.matched),
            enrolled=len(report.enrolled),
            skipped=len(report.skipped),
            errors=len(report.errors),
        )
        return report

    @staticmethod
    def _initial_context(
        event: TriggerEvent, client: Client, category: str | None
    ) -> dict[str, Any]:
        return {
            **event.payload,
            "org_id": event.org_id,
            "client_id": event.client_id,
            "trigger_type": str(event.trigger_type),
            "appointment_id": event.appointment_id,
            "appointment_type": event.appointment_type,
            "category": category,
            "client": client.model_dump(mode="json"),
        }
