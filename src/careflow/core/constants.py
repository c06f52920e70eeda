from __future__ import annotations

from enum import StrEnum


class TriggerType(StrEnum):
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    CLIENT_CREATED = "client_created"
    CLIENT_UPDATED = "client_updated"
    MANUAL = "manual"


class StepType(StrEnum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    DELAY = "delay"
    CREATE_APPOINTMENT = "create_appointment"
    UPDATE_CLIENT = "update_client"
    CREATE_TASK = "create_task"
    SEND_NOTIFICATION = "send_notification"
    POST_SOCIAL = "post_social"
    WAIT = "wait"
    CONDITION = "condition"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class EnrollmentStatus(StrEnum):
    # PENDING is the implicit state before the engine picks an enrollment
    # up; stores only ever persist ACTIVE and the terminal states.
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            EnrollmentStatus.COMPLETED,
            EnrollmentStatus.FAILED,
            EnrollmentStatus.CANCELLED,
        )


class LogOutcome(StrEnum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


class DeliveryStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    OPTED_OUT = "opted_out"
    NO_RECIPIENT = "no_recipient"


class Channel(StrEnum):
    SMS = "sms"
    EMAIL = "email"


class RecordKind(StrEnum):
    APPOINTMENT = "appointment"
    CLIENT_UPDATE = "client_update"
    TASK = "task"
    NOTIFICATION = "notification"
    SOCIAL_POST = "social_post"
    CLIENT_TAGS = "client_tags"
