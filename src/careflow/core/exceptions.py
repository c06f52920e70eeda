from __future__ import annotations

from typing import Any


class CareflowError(Exception):
    """Base exception for all careflow errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"WORKFLOW_NOT_FOUND"``).
        details: Arbitrary key/value context about the error.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ConfigurationError(CareflowError): ...


# ---------------------------------------------------------------------------
# Definition errors: surfaced to the invoker, never logged as step outcomes
# ---------------------------------------------------------------------------


class WorkflowNotFoundError(CareflowError): ...


class WorkflowInactiveError(CareflowError): ...


class ExecutionNotFoundError(CareflowError): ...


# ---------------------------------------------------------------------------
# Record store lookups
# ---------------------------------------------------------------------------


class RecordNotFoundError(CareflowError): ...


class ClientNotFoundError(RecordNotFoundError): ...


class AppointmentNotFoundError(RecordNotFoundError): ...


class TemplateNotFoundError(RecordNotFoundError): ...


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------


class EnrollmentConflictError(CareflowError):
    """The store already holds an active enrollment for the (client, workflow) pair."""


class DuplicateEnrollmentError(CareflowError):
    """An explicit invocation was refused by duplicate prevention."""


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


class StepExecutionError(CareflowError): ...


class StepConfigError(StepExecutionError): ...


class DeliveryFailedError(StepExecutionError): ...


class ChannelMismatchError(StepExecutionError): ...


class StepSkipped(CareflowError):
    """Raised by a step handler for expected "not applicable" business states.

    The engine logs the step as ``skipped`` and moves on; the enrollment does
    not fail.
    """

    def __init__(self, message: str, result: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="STEP_SKIPPED")
        self.result = result


# ---------------------------------------------------------------------------
# Delivery providers
# ---------------------------------------------------------------------------


class ProviderError(CareflowError):
    """A single delivery provider failed. Recovered by the provider chain."""
