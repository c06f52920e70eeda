"""Storage abstractions.

:class:`RecordStore` is the CRM record store the engine consumes (clients,
appointments, templates, scoped mutations). :class:`WorkflowRepository`
holds the engine's own state: definitions, enrollments, the execution log
and delivery records. Every read and write is scoped by organization.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from careflow.core.constants import RecordKind
from careflow.core.types import (
    Appointment,
    Client,
    DeliveryRecord,
    Enrollment,
    ExecutionLogEntry,
    MessageTemplate,
    WorkflowDefinition,
)


class RecordStore(ABC):
    """Read/write access to CRM records.

    Lookups return ``None`` for unknown ids; callers decide whether a miss is
    an error.
    """

    @abstractmethod
    async def get_client(self, org_id: str, client_id: str) -> Client | None:
        """Return the client with its tags, phones, email and preferences."""

    @abstractmethod
    async def get_appointment(self, org_id: str, appointment_id: str) -> Appointment | None:
        """Return the appointment with its type, start time and status."""

    @abstractmethod
    async def get_template(self, org_id: str, template_id: str) -> MessageTemplate | None:
        """Return the message template, active or not."""

    @abstractmethod
    async def mutate_record(
        self, org_id: str, kind: RecordKind, payload: dict[str, Any]
    ) -> str:
        """Apply one atomic, org-scoped write and return the affected record id.

        Raises:
            RecordNotFoundError: If the write targets a record that does not exist.
        """

    async def close(self) -> None:
        """Release resources held by the store."""


class WorkflowRepository(ABC):
    """Persistence for definitions, enrollments, execution logs and deliveries."""

    # -- definitions --------------------------------------------------------

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> None: ...

    @abstractmethod
    async def get_definition(self, org_id: str, workflow_id: str) -> WorkflowDefinition | None: ...

    @abstractmethod
    async def list_definitions(
        self, org_id: str, trigger_type: str | None = None, active_only: bool = False
    ) -> list[WorkflowDefinition]: ...

    # -- enrollments --------------------------------------------------------

    @abstractmethod
    async def insert_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """Insert a new enrollment.

        Raises:
            EnrollmentConflictError: If an active enrollment already exists
                for the same (workflow, client) pair.
        """

    @abstractmethod
    async def update_enrollment(self, enrollment: Enrollment) -> Enrollment: ...

    @abstractmethod
    async def update_active_enrollment(self, enrollment: Enrollment) -> bool:
        """Write *enrollment* only if the stored row is still ``active``.

        Returns ``False`` and writes nothing when the enrollment is gone or
        has already left ``active`` (completed, failed or cancelled).
        """

    @abstractmethod
    async def cancel_enrollment(
        self, enrollment_id: str, completed_at: datetime
    ) -> Enrollment | None:
        """Atomically move an active enrollment to ``cancelled``.

        Returns the cancelled enrollment, or ``None`` if it was not active.
        """

    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None: ...

    @abstractmethod
    async def find_latest_enrollment(
        self,
        org_id: str,
        workflow_id: str,
        client_id: str,
        since: datetime | None = None,
    ) -> Enrollment | None:
        """Most recent enrollment for the pair, optionally enrolled after *since*."""

    @abstractmethod
    async def find_active_enrollments(
        self, org_id: str, workflow_id: str, client_id: str
    ) -> list[Enrollment]: ...

    @abstractmethod
    async def list_due_enrollments(self, now: datetime, limit: int = 100) -> list[Enrollment]:
        """Active enrollments whose ``next_run_at`` is at or before *now*."""

    @abstractmethod
    async def list_enrollments(
        self,
        org_id: str | None = None,
        status: str | None = None,
        client_id: str | None = None,
    ) -> list[Enrollment]: ...

    # -- execution log ------------------------------------------------------

    @abstractmethod
    async def append_log(self, entry: ExecutionLogEntry) -> None: ...

    @abstractmethod
    async def list_logs(self, enrollment_id: str) -> list[ExecutionLogEntry]:
        """Log entries for an enrollment in append order."""

    # -- deliveries ---------------------------------------------------------

    @abstractmethod
    async def add_delivery(self, record: DeliveryRecord) -> None: ...

    @abstractmethod
    async def list_deliveries(
        self, org_id: str, client_id: str | None = None
    ) -> list[DeliveryRecord]: ...

    async def close(self) -> None:
        """Release resources held by the repository."""
