"""Step handlers, one per :class:`~careflow.core.constants.StepType`.

Handlers receive the step and a :class:`StepContext` snapshot and return a
:class:`StepResult`. They never mutate the context; updates travel back in
``StepResult.context_updates`` and the engine merges them into a new context
version.

Expected "not applicable" states raise :class:`StepSkipped`; anything else
that goes wrong raises and fails the enrollment.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from careflow.conditions.evaluator import evaluate
from careflow.core.constants import Channel, DeliveryStatus, RecordKind, StepType
from careflow.core.exceptions import DeliveryFailedError, StepConfigError, StepSkipped
from careflow.core.types import Condition, Enrollment, ExecutionContext, Step
from careflow.messaging.service import MessageDeliveryService
from careflow.store.base import RecordStore
from careflow.templates.renderer import TemplateRenderer
from careflow.templates.variables import build_merge_variables

_UNIT_MINUTES: dict[str, float] = {
    "seconds": 1 / 60,
    "minutes": 1,
    "hours": 60,
    "days": 60 * 24,
    "weeks": 60 * 24 * 7,
    "months": 60 * 24 * 30,
}


def _unit_minutes(unit: Any) -> float:
    key = str(unit or "days").lower()
    if not key.endswith("s"):
        key += "s"
    return _UNIT_MINUTES.get(key, _UNIT_MINUTES["days"])


def step_delay(step: Step) -> timedelta:
    """Total time to wait before *step* runs.

    ``delay_minutes`` applies to any step. ``delay`` and ``wait`` steps add
    their own duration: ``{"value": n, "unit": "hours"}`` (unknown or missing
    unit means days) or ``{"duration": n}`` in minutes.
    """
    minutes = step.delay_minutes
    if step.type in (StepType.DELAY, StepType.WAIT):
        config = step.config
        try:
            if config.get("value") is not None:
                minutes += float(config["value"]) * _unit_minutes(config.get("unit"))
            elif config.get("duration") is not None:
                minutes += float(config["duration"]) * _unit_minutes(config.get("unit", "minutes"))
        except (TypeError, ValueError) as exc:
            raise StepConfigError(
                f"Step {step.id} has an invalid delay: {exc}", code="INVALID_DELAY"
            ) from exc
    return timedelta(minutes=max(minutes, 0.0))


@dataclass(frozen=True)
class StepContext:
    """Everything a handler may read while executing one step."""

    enrollment: Enrollment
    context: ExecutionContext
    records: RecordStore
    delivery: MessageDeliveryService
    default_variables: dict[str, Any]
    now: datetime

    @property
    def org_id(self) -> str:
        return self.enrollment.org_id

    @property
    def client_id(self) -> str:
        return str(self.context.get("client_id") or self.enrollment.client_id)


class StepResult(BaseModel):
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    context_updates: dict[str, Any] = Field(default_factory=dict)


class StepHandler(ABC):
    @abstractmethod
    async def execute(self, step: Step, ctx: StepContext) -> StepResult: ...


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class SendMessageHandler(StepHandler):
    """``send_email`` / ``send_sms`` through the delivery service."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    async def execute(self, step: Step, ctx: StepContext) -> StepResult:
        template_id = step.config.get("template_id")
        if not template_id:
            raise StepConfigError(f"Step {step.id} has no template_id", code="MISSING_TEMPLATE")

        appointment = None
        appointment_id = ctx.context.get("appointment_id")
        if appointment_id:
            appointment = await ctx.records.get_appointment(ctx.org_id, str(appointment_id))

        variables = build_merge_variables(
            appointment=appointment,
            context=ctx.context.data,
            overrides=step.config.get("variables") or {},
        )
        record = await ctx.delivery.send(
            ctx.org_id,
            ctx.client_id,
            str(template_id),
            variables,
            channel_hint=self.channel,
            metadata={
                "enrollment_id": ctx.enrollment.id,
                "workflow_id": ctx.enrollment.workflow_id,
                "step_id": step.id,
            },
        )
        data = record.model_dump(
            mode="json",
            include={"id", "status", "provider", "external_id", "recipient", "error"},
        )

        if record.status == DeliveryStatus.SENT:
            return StepResult(
                message=f"{self.channel} sent via {record.provider}",
                data=data,
                context_updates={f"last_{self.channel}_delivery_id": record.id},
            )
        if record.status in (DeliveryStatus.OPTED_OUT, DeliveryStatus.NO_RECIPIENT):
            raise StepSkipped(f"{self.channel} not sent: {record.status}", result=data)
        raise DeliveryFailedError(
            f"{self.channel} delivery failed: {record.error}",
            code="DELIVERY_FAILED",
            details=data,
        )


# ---------------------------------------------------------------------------
# Record mutations
# ---------------------------------------------------------------------------


class RecordMutationHandler(StepHandler):
    """One scoped write to the record store.

    The payload is built from context defaults overlaid by the step config
    (config wins). The returned record id is merged into the context under
    ``id_key``.
    """

    kind: RecordKind
    id_key: str | None = None

    def defaults(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        return {"client_id": ctx.client_id}

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        return {**self.defaults(step, ctx), **step.config}

    def describe(self, payload: dict[str, Any]) -> str:
        return f"{self.kind} written"

    async def execute(self, step: Step, ctx: StepContext) -> StepResult:
        payload = self.payload(step, ctx)
        record_id = await ctx.records.mutate_record(ctx.org_id, self.kind, payload)
        updates = {self.id_key: record_id} if self.id_key else {}
        return StepResult(
            message=self.describe(payload),
            data={"record_id": record_id, "kind": str(self.kind)},
            context_updates=updates,
        )


class CreateAppointmentHandler(RecordMutationHandler):
    kind = RecordKind.APPOINTMENT
    id_key = "appointment_id"

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        config = step.config
        service = config.get("service") or config.get("type") or ""
        start = config.get("start_time") or config.get("date") or ctx.now + timedelta(days=1)
        return {
            "client_id": config.get("client_id") or ctx.client_id,
            "type": service,
            "title": config.get("title") or service,
            "start_time": start,
            "duration_minutes": config.get("duration_minutes") or config.get("duration") or 60,
            "status": "scheduled",
        }

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Appointment created for {payload['title'] or 'client'}"


class UpdateClientHandler(RecordMutationHandler):
    kind = RecordKind.CLIENT_UPDATE

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        config = step.config
        fields = dict(config.get("fields") or {})
        if config.get("field"):
            fields[str(config["field"])] = config.get("value")
        if not fields:
            raise StepConfigError(f"Step {step.id} updates no fields", code="MISSING_FIELDS")
        return {"client_id": config.get("client_id") or ctx.client_id, "fields": fields}

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Client updated: {', '.join(sorted(payload['fields']))}"


class CreateTaskHandler(RecordMutationHandler):
    kind = RecordKind.TASK
    id_key = "task_id"

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Task created: {payload.get('title', '')}"


class SendNotificationHandler(RecordMutationHandler):
    kind = RecordKind.NOTIFICATION
    id_key = "notification_id"

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        payload = super().payload(step, ctx)
        if isinstance(payload.get("message"), str):
            variables = build_merge_variables(
                context=ctx.context.data, defaults=ctx.default_variables
            )
            payload["message"] = TemplateRenderer(payload["message"]).render(variables)
        return payload

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Notification sent: {payload.get('message', '')}"


class PostSocialHandler(RecordMutationHandler):
    kind = RecordKind.SOCIAL_POST
    id_key = "social_post_id"

    def defaults(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        return {"platforms": [], "media_urls": [], "status": "published"}

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Social post created for: {', '.join(payload.get('platforms') or [])}"


def _tags(step: Step) -> list[str]:
    tags = step.config.get("tags")
    if tags is None and step.config.get("tag"):
        tags = [step.config["tag"]]
    return [str(tag) for tag in tags or []]


class AddTagHandler(RecordMutationHandler):
    kind = RecordKind.CLIENT_TAGS

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        tags = _tags(step)
        if not tags:
            raise StepConfigError(f"Step {step.id} names no tags", code="MISSING_TAGS")
        return {"client_id": step.config.get("client_id") or ctx.client_id, "add": tags}

    def describe(self, payload: dict[str, Any]) -> str:
        return f"Tags added: {', '.join(payload['add'])}"


class RemoveTagHandler(RecordMutationHandler):
    kind = RecordKind.CLIENT_TAGS

    def payload(self, step: Step, ctx: StepContext) -> dict[str, Any]:
        remove_all = bool(step.config.get("all"))
        tags = _tags(step)
        if not tags and not remove_all:
            raise StepConfigError(f"Step {step.id} names no tags", code="MISSING_TAGS")
        return {
            "client_id": step.config.get("client_id") or ctx.client_id,
            "remove": tags,
            "remove_all": remove_all,
        }

    def describe(self, payload: dict[str, Any]) -> str:
        if payload["remove_all"]:
            return "All tags removed"
        return f"Tags removed: {', '.join(payload['remove'])}"


# ---------------------------------------------------------------------------
# Control steps
# ---------------------------------------------------------------------------


class DelayHandler(StepHandler):
    """Marker for ``delay`` / ``wait``; the engine already waited."""

    async def execute(self, step: Step, ctx: StepContext) -> StepResult:
        minutes = step_delay(step).total_seconds() / 60
        return StepResult(message=f"Waited {minutes:g} minutes", data={"waited_minutes": minutes})


class ConditionHandler(StepHandler):
    """Evaluates ``config.conditions`` and records the result in the context.

    Never branches; later steps gate on ``condition_result`` themselves.
    """

    async def execute(self, step: Step, ctx: StepContext) -> StepResult:
        try:
            conditions = [Condition.model_validate(c) for c in step.config.get("conditions") or []]
        except ValidationError as exc:
            raise StepConfigError(
                f"Step {step.id} has invalid conditions: {exc}", code="INVALID_CONDITIONS"
            ) from exc
        result = evaluate(conditions, ctx.context)
        return StepResult(
            message=f"Condition evaluated: {str(result).lower()}",
            data={"condition_result": result},
            context_updates={"condition_result": result, step.id: result},
        )


HANDLERS: dict[StepType, StepHandler] = {
    StepType.SEND_EMAIL: SendMessageHandler(Channel.EMAIL),
    StepType.SEND_SMS: SendMessageHandler(Channel.SMS),
    StepType.DELAY: DelayHandler(),
    StepType.WAIT: DelayHandler(),
    StepType.CREATE_APPOINTMENT: CreateAppointmentHandler(),
    StepType.UPDATE_CLIENT: UpdateClientHandler(),
    StepType.CREATE_TASK: CreateTaskHandler(),
    StepType.SEND_NOTIFICATION: SendNotificationHandler(),
    StepType.POST_SOCIAL: PostSocialHandler(),
    StepType.CONDITION: ConditionHandler(),
    StepType.ADD_TAG: AddTagHandler(),
    StepType.REMOVE_TAG: RemoveTagHandler(),
}

_unhandled = set(StepType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler registered for step types: {sorted(_unhandled)}")
