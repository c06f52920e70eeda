"""Workflow step execution."""
from careflow.workflows.actions import HANDLERS, StepContext, StepHandler, StepResult, step_delay
from careflow.workflows.engine import RunOutcome, StepExecutionEngine

__all__ = [
    "HANDLERS",
    "StepContext",
    "StepHandler",
    "StepResult",
    "step_delay",
    "RunOutcome",
    "StepExecutionEngine",
]
