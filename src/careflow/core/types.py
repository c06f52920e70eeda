from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from careflow.core.constants import (
    Channel,
    ConditionOperator,
    DeliveryStatus,
    EnrollmentStatus,
    LogOutcome,
    StepType,
    TriggerType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------


class Condition(BaseModel):
    """A boolean predicate over the execution context.

    ``field`` is a dot path (``"client.tags"``, ``"appointment_type"``).
    ``value_type`` declares how ``equals`` / ``not_equals`` compare; ``auto``
    compares same-kind values directly and falls back to string comparison.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: Any = None
    value_type: Literal["auto", "string", "number", "boolean"] = "auto"


class Step(BaseModel):
    """One unit of work in a workflow's ordered step list."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: StepType
    position: int = 0
    config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[Condition] = Field(default_factory=list)
    delay_minutes: float = Field(default=0.0, ge=0.0)
    """Optional delay applied before the step executes (0 = none)."""


class MatchConditions(BaseModel):
    """Allow-lists narrowing which events activate a definition.

    ``None`` or an empty list means "match all".
    """

    model_config = ConfigDict(frozen=True)

    appointment_types: list[str] | None = None
    client_tags: list[str] | None = None


class DuplicatePrevention(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    lookback_days: int = Field(default=30, ge=0)


class WorkflowDefinition(BaseModel):
    """An automation definition: trigger, match conditions and ordered steps.

    Definitions are frozen; edits produce a new definition and only affect
    enrollments created afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    org_id: str
    name: str = ""
    trigger_type: TriggerType
    is_active: bool = True
    steps: list[Step] = Field(default_factory=list)
    match: MatchConditions = Field(default_factory=MatchConditions)
    duplicate_prevention: DuplicatePrevention = Field(default_factory=DuplicatePrevention)
    restart_if_active: bool = False

    @property
    def ordered_steps(self) -> list[Step]:
        """Steps sorted by ``position``; ties keep declaration order."""
        return sorted(self.steps, key=lambda step: step.position)


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


class ExecutionContext(BaseModel):
    """Versioned key/value map carried through one enrollment's run.

    Contexts are never mutated in place: :meth:`merge` returns a new context
    with ``version + 1`` so each step receives a snapshot and hands back its
    updates explicitly.
    """

    model_config = ConfigDict(frozen=True)

    data: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    def merge(self, updates: dict[str, Any] | None) -> ExecutionContext:
        if not updates:
            return self
        return ExecutionContext(data={**self.data, **updates}, version=self.version + 1)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


# ---------------------------------------------------------------------------
# Enrollments and the execution log
# ---------------------------------------------------------------------------


class EnrollmentMetadata(BaseModel):
    appointment_id: str | None = None
    trigger_type: TriggerType | None = None
    category: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Enrollment(BaseModel):
    """One client's single pass through one workflow definition."""

    id: str = Field(default_factory=new_id)
    org_id: str
    workflow_id: str
    client_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrollment_reason: str = ""
    cursor: int = Field(default=0, ge=0)
    enrolled_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    next_run_at: datetime | None = None
    """Persisted due time of a pending delay."""
    delayed_cursor: int | None = None
    """Cursor whose delay has already been scheduled."""
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    metadata: EnrollmentMetadata = Field(default_factory=EnrollmentMetadata)
    definition: WorkflowDefinition | None = None
    """Definition as it stood at enrollment; runs never re-read the stored one."""


class ExecutionLogEntry(BaseModel):
    """Append-only audit record of one step outcome."""

    id: str = Field(default_factory=new_id)
    org_id: str
    enrollment_id: str
    workflow_id: str
    step_id: str
    step_type: StepType
    cursor: int
    timestamp: datetime = Field(default_factory=utcnow)
    outcome: LogOutcome
    message: str = ""
    result: dict[str, Any] | None = None
    error: str | None = None


class ExecutionStatus(BaseModel):
    """Answer to an execution status query: current state plus the full log."""

    enrollment_id: str
    workflow_id: str
    client_id: str
    status: EnrollmentStatus
    cursor: int
    step_count: int
    next_run_at: datetime | None = None
    completed_at: datetime | None = None
    log: list[ExecutionLogEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Message delivery
# ---------------------------------------------------------------------------


class DeliveryRecord(BaseModel):
    """Final outcome of one ``send`` call after the provider chain ran."""

    id: str = Field(default_factory=new_id)
    org_id: str
    template_id: str
    client_id: str
    channel: Channel
    status: DeliveryStatus
    provider: str | None = None
    external_id: str | None = None
    recipient: str | None = None
    error: str | None = None
    scheduled_for: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderResult(BaseModel):
    success: bool
    external_id: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------


class CommunicationPreferences(BaseModel):
    sms_opt_out: bool = False
    email_opt_out: bool = False

    def has_opted_out(self, channel: Channel) -> bool:
        if channel == Channel.SMS:
            return self.sms_opt_out
        return self.email_opt_out


class Client(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    org_id: str
    full_name: str = ""
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phones: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    preferences: CommunicationPreferences = Field(default_factory=CommunicationPreferences)

    def recipient_for(self, channel: Channel) -> str | None:
        """First phone number for SMS, email address for email."""
        if channel == Channel.SMS:
            return self.phones[0] if self.phones else None
        return self.email or None


class Appointment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    org_id: str
    client_id: str
    type: str = ""
    title: str = ""
    start_time: datetime | None = None
    duration_minutes: int = 60
    status: str = "scheduled"


class MessageTemplate(BaseModel):
    id: str
    org_id: str
    name: str = ""
    channel: Channel
    subject: str | None = None
    body: str
    is_active: bool = True


# ---------------------------------------------------------------------------
# Triggering
# ---------------------------------------------------------------------------


class TriggerEvent(BaseModel):
    """A business event after raw change types were mapped to a trigger."""

    org_id: str
    trigger_type: TriggerType
    client_id: str
    appointment_id: str | None = None
    appointment_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class TriggerReport(BaseModel):
    """What happened to each candidate definition for one event.

    Attributes:
        matched: Ids of definitions whose trigger and match conditions held.
        enrolled: Enrollments created for this event.
        skipped: Workflow id -> reason the client was not enrolled.
        errors: Workflow id -> error message; isolated per definition.
    """

    trigger_type: TriggerType | None = None
    matched: list[str] = Field(default_factory=list)
    enrolled: list[Enrollment] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
