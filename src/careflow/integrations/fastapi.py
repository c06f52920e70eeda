"""FastAPI router exposing the automation engine over HTTP.

Usage::

    from careflow.integrations.fastapi import create_automation_router

    app = FastAPI()
    app.include_router(create_automation_router(engine, prefix="/automation"))

Requires the ``fastapi`` extra::

    pip install careflow[fastapi]
"""

from __future__ import annotations

from typing import Any

try:
    from fastapi import APIRouter, HTTPException
    from pydantic import BaseModel as _FaBaseModel
    from pydantic import Field as _FaField
except ImportError as _err:  # pragma: no cover
    raise ImportError(
        "FastAPI is required for careflow.integrations.fastapi. "
        "Install it with: pip install careflow[fastapi]"
    ) from _err

from careflow.core.automation import AutomationEngine
from careflow.core.constants import TriggerType
from careflow.core.exceptions import (
    CareflowError,
    DuplicateEnrollmentError,
    EnrollmentConflictError,
    ExecutionNotFoundError,
    RecordNotFoundError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from careflow.core.types import ExecutionStatus, TriggerReport

# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class _AppointmentEventRequest(_FaBaseModel):
    org_id: str
    appointment_id: str
    change_type: str
    metadata: dict[str, Any] = _FaField(default_factory=dict)


class _ClientEventRequest(_FaBaseModel):
    org_id: str
    client_id: str
    change_type: str
    metadata: dict[str, Any] = _FaField(default_factory=dict)


class _EventResponse(_FaBaseModel):
    handled: bool
    report: TriggerReport | None = None


class _ExecuteRequest(_FaBaseModel):
    org_id: str
    trigger_type: TriggerType | None = None
    context_data: dict[str, Any] = _FaField(default_factory=dict)


class _ExecuteResponse(_FaBaseModel):
    execution_id: str


def _http_error(exc: CareflowError) -> HTTPException:
    if isinstance(exc, (WorkflowNotFoundError, ExecutionNotFoundError, RecordNotFoundError)):
        status = 404
    elif isinstance(exc, (DuplicateEnrollmentError, EnrollmentConflictError, WorkflowInactiveError)):
        status = 409
    else:
        status = 400
    return HTTPException(status_code=status, detail={"code": exc.code, "message": str(exc)})


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------


def create_automation_router(
    engine: AutomationEngine,
    prefix: str = "/automation",
) -> APIRouter:
    """Return an :class:`APIRouter` with automation endpoints.

    Endpoints:
        - ``POST {prefix}/events/appointments``: appointment change
        - ``POST {prefix}/events/clients``: client change
        - ``POST {prefix}/workflows/{workflow_id}/execute``: explicit invocation
        - ``GET  {prefix}/executions/{execution_id}``: status and log
    """
    router = APIRouter(prefix=prefix, tags=["automation"])

    @router.post("/events/appointments", response_model=_EventResponse)
    async def appointment_event(body: _AppointmentEventRequest) -> _EventResponse:
        try:
            report = await engine.on_appointment_event(
                body.org_id, body.appointment_id, body.change_type, body.metadata
            )
        except CareflowError as exc:
            raise _http_error(exc) from exc
        return _EventResponse(handled=report is not None, report=report)

    @router.post("/events/clients", response_model=_EventResponse)
    async def client_event(body: _ClientEventRequest) -> _EventResponse:
        try:
            report = await engine.on_client_event(
                body.org_id, body.client_id, body.change_type, body.metadata
            )
        except CareflowError as exc:
            raise _http_error(exc) from exc
        return _EventResponse(handled=report is not None, report=report)

    @router.post(
        "/workflows/{workflow_id}/execute",
        response_model=_ExecuteResponse,
        status_code=202,
    )
    async def execute_workflow(workflow_id: str, body: _ExecuteRequest) -> _ExecuteResponse:
        try:
            execution_id = await engine.execute_workflow(
                body.org_id, workflow_id, body.trigger_type, body.context_data
            )
        except CareflowError as exc:
            raise _http_error(exc) from exc
        return _ExecuteResponse(execution_id=execution_id)

    @router.get("/executions/{execution_id}", response_model=ExecutionStatus)
    async def execution_status(execution_id: str) -> ExecutionStatus:
        try:
            return await engine.get_execution_status(execution_id)
        except CareflowError as exc:
            raise _http_error(exc) from exc

    return router
