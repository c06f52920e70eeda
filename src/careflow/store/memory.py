"""In-memory store implementations.

Used by tests, demos and single-process deployments that can afford to lose
state on restart. Records are deep-copied on the way in and out so callers
never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import structlog

from careflow.core.constants import EnrollmentStatus, RecordKind
from careflow.core.exceptions import ClientNotFoundError, EnrollmentConflictError
from careflow.core.types import (
    Appointment,
    Client,
    DeliveryRecord,
    Enrollment,
    ExecutionLogEntry,
    MessageTemplate,
    WorkflowDefinition,
    new_id,
    utcnow,
)
from careflow.store.base import RecordStore, WorkflowRepository

logger = structlog.get_logger(__name__)


class InMemoryRecordStore(RecordStore):
    """Dict-backed CRM record store."""

    def __init__(self) -> None:
        self._clients: dict[tuple[str, str], Client] = {}
        self._appointments: dict[tuple[str, str], Appointment] = {}
        self._templates: dict[tuple[str, str], MessageTemplate] = {}
        self.tasks: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.social_posts: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    # -- seeding ------------------------------------------------------------

    def add_client(self, client: Client) -> Client:
        self._clients[(client.org_id, client.id)] = client.model_copy(deep=True)
        return client

    def add_appointment(self, appointment: Appointment) -> Appointment:
        self._appointments[(appointment.org_id, appointment.id)] = appointment.model_copy(deep=True)
        return appointment

    def add_template(self, template: MessageTemplate) -> MessageTemplate:
        self._templates[(template.org_id, template.id)] = template.model_copy(deep=True)
        return template

    # -- RecordStore --------------------------------------------------------

    async def get_client(self, org_id: str, client_id: str) -> Client | None:
        client = self._clients.get((org_id, client_id))
        return client.model_copy(deep=True) if client else None

    async def get_appointment(self, org_id: str, appointment_id: str) -> Appointment | None:
        appointment = self._appointments.get((org_id, appointment_id))
        return appointment.model_copy(deep=True) if appointment else None

    async def get_template(self, org_id: str, template_id: str) -> MessageTemplate | None:
        template = self._templates.get((org_id, template_id))
        return template.model_copy(deep=True) if template else None

    async def mutate_record(
        self, org_id: str, kind: RecordKind, payload: dict[str, Any]
    ) -> str:
        async with self._lock:
            if kind == RecordKind.APPOINTMENT:
                return self._create_appointment(org_id, payload)
            if kind == RecordKind.CLIENT_UPDATE:
                return self._update_client(org_id, payload)
            if kind == RecordKind.CLIENT_TAGS:
                return self._update_tags(org_id, payload)

            record = {"id": new_id(), "org_id": org_id, "created_at": utcnow(), **payload}
            if kind == RecordKind.TASK:
                self.tasks.append(record)
            elif kind == RecordKind.NOTIFICATION:
                self.notifications.append(record)
            elif kind == RecordKind.SOCIAL_POST:
                self.social_posts.append(record)
            else:
                raise ValueError(f"Unsupported record kind: {kind}")
            return str(record["id"])

    # -- mutation helpers (caller holds the lock) ---------------------------

    def _require_client(self, org_id: str, client_id: Any) -> Client:
        client = self._clients.get((org_id, str(client_id)))
        if client is None:
            raise ClientNotFoundError(f"Client {client_id} not found in org {org_id}")
        return client

    def _create_appointment(self, org_id: str, payload: dict[str, Any]) -> str:
        self._require_client(org_id, payload.get("client_id"))
        known = set(Appointment.model_fields) - {"id", "org_id"}
        appointment = Appointment(
            id=new_id(),
            org_id=org_id,
            **{k: v for k, v in payload.items() if k in known},
        )
        self._appointments[(org_id, appointment.id)] = appointment
        return appointment.id

    def _update_client(self, org_id: str, payload: dict[str, Any]) -> str:
        client = self._require_client(org_id, payload.get("client_id"))
        fields: dict[str, Any] = dict(payload.get("fields") or {})
        fields.pop("id", None)
        fields.pop("org_id", None)
        updated = Client.model_validate({**client.model_dump(), **fields})
        self._clients[(org_id, client.id)] = updated
        return client.id

    def _update_tags(self, org_id: str, payload: dict[str, Any]) -> str:
        client = self._require_client(org_id, payload.get("client_id"))
        if payload.get("remove_all"):
            tags: list[str] = []
        else:
            removed = set(payload.get("remove") or [])
            tags = [tag for tag in client.tags if tag not in removed]
        for tag in payload.get("add") or []:
            if tag not in tags:
                tags.append(tag)
        self._clients[(org_id, client.id)] = client.model_copy(update={"tags": tags})
        return client.id


class InMemoryWorkflowRepository(WorkflowRepository):
    """Dict-backed engine state.

    The single-active-enrollment invariant is enforced under an
    :class:`asyncio.Lock`, mirroring the unique index of the SQLite store.
    """

    def __init__(self) -> None:
        self._definitions: dict[tuple[str, str], WorkflowDefinition] = {}
        self._enrollments: dict[str, Enrollment] = {}
        self._logs: dict[str, list[ExecutionLogEntry]] = {}
        self._deliveries: list[DeliveryRecord] = []
        self._lock = asyncio.Lock()

    # -- definitions --------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[(definition.org_id, definition.id)] = definition

    async def get_definition(self, org_id: str, workflow_id: str) -> WorkflowDefinition | None:
        return self._definitions.get((org_id, workflow_id))

    async def list_definitions(
        self, org_id: str, trigger_type: str | None = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        return [
            d
            for (org, _), d in self._definitions.items()
            if org == org_id
            and (trigger_type is None or d.trigger_type == trigger_type)
            and (not active_only or d.is_active)
        ]

    # -- enrollments --------------------------------------------------------

    async def insert_enrollment(self, enrollment: Enrollment) -> Enrollment:
        async with self._lock:
            if enrollment.status == EnrollmentStatus.ACTIVE:
                for existing in self._enrollments.values():
                    if (
                        existing.status == EnrollmentStatus.ACTIVE
                        and existing.workflow_id == enrollment.workflow_id
                        and existing.client_id == enrollment.client_id
                        and existing.org_id == enrollment.org_id
                    ):
                        raise EnrollmentConflictError(
                            f"Client {enrollment.client_id} already has an active "
                            f"enrollment in workflow {enrollment.workflow_id}",
                            code="ENROLLMENT_CONFLICT",
                            details={"existing_id": existing.id},
                        )
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment

    async def update_enrollment(self, enrollment: Enrollment) -> Enrollment:
        async with self._lock:
            if enrollment.id not in self._enrollments:
                raise KeyError(f"Enrollment '{enrollment.id}' not found")
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment

    async def update_active_enrollment(self, enrollment: Enrollment) -> bool:
        async with self._lock:
            stored = self._enrollments.get(enrollment.id)
            if stored is None or stored.status != EnrollmentStatus.ACTIVE:
                return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return True

    async def cancel_enrollment(
        self, enrollment_id: str, completed_at: datetime
    ) -> Enrollment | None:
        async with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if stored is None or stored.status != EnrollmentStatus.ACTIVE:
                return None
            cancelled = stored.model_copy(
                update={
                    "status": EnrollmentStatus.CANCELLED,
                    "completed_at": completed_at,
                    "next_run_at": None,
                },
                deep=True,
            )
            self._enrollments[enrollment_id] = cancelled
        return cancelled.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def find_latest_enrollment(
        self,
        org_id: str,
        workflow_id: str,
        client_id: str,
        since: datetime | None = None,
    ) -> Enrollment | None:
        candidates = [
            e
            for e in self._enrollments.values()
            if e.org_id == org_id
            and e.workflow_id == workflow_id
            and e.client_id == client_id
            and (since is None or e.enrolled_at > since)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.enrolled_at).model_copy(deep=True)

    async def find_active_enrollments(
        self, org_id: str, workflow_id: str, client_id: str
    ) -> list[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.org_id == org_id
            and e.workflow_id == workflow_id
            and e.client_id == client_id
            and e.status == EnrollmentStatus.ACTIVE
        ]

    async def list_due_enrollments(self, now: datetime, limit: int = 100) -> list[Enrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE
            and e.next_run_at is not None
            and e.next_run_at <= now
        ]
        due.sort(key=lambda e: e.next_run_at or now)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def list_enrollments(
        self,
        org_id: str | None = None,
        status: str | None = None,
        client_id: str | None = None,
    ) -> list[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (org_id is None or e.org_id == org_id)
            and (status is None or e.status == status)
            and (client_id is None or e.client_id == client_id)
        ]

    # -- execution log ------------------------------------------------------

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        self._logs.setdefault(entry.enrollment_id, []).append(entry)

    async def list_logs(self, enrollment_id: str) -> list[ExecutionLogEntry]:
        return list(self._logs.get(enrollment_id, []))

    # -- deliveries ---------------------------------------------------------

    async def add_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries.append(record)
        logger.debug("delivery_recorded", delivery_id=record.id, status=record.status)

    async def list_deliveries(
        self, org_id: str, client_id: str | None = None
    ) -> list[DeliveryRecord]:
        return [
            r
            for r in self._deliveries
            if r.org_id == org_id and (client_id is None or r.client_id == client_id)
        ]
