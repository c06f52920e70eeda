"""Tests for integrations/fastapi.py (requires fastapi extra)."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from careflow.core.automation import AutomationEngine
from careflow.core.constants import EnrollmentStatus, TriggerType
from careflow.core.exceptions import (
    CareflowError,
    ClientNotFoundError,
    DuplicateEnrollmentError,
    ExecutionNotFoundError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from careflow.core.types import ExecutionStatus, TriggerReport

try:
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from careflow.integrations.fastapi import create_automation_router

    _FASTAPI_AVAILABLE = True
except ImportError:
    _FASTAPI_AVAILABLE = False

pytestmark = pytest.mark.skipif(
    not _FASTAPI_AVAILABLE, reason="fastapi not installed"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_engine() -> MagicMock:
    engine = MagicMock(spec=AutomationEngine)
    engine.on_appointment_event = AsyncMock(
        return_value=TriggerReport(
            trigger_type=TriggerType.APPOINTMENT_COMPLETED, matched=["wf-1"]
        )
    )
    engine.on_client_event = AsyncMock(return_value=None)
    engine.execute_workflow = AsyncMock(return_value="enr-1")
    engine.get_execution_status = AsyncMock(
        return_value=ExecutionStatus(
            enrollment_id="enr-1",
            workflow_id="wf-1",
            client_id="client-1",
            status=EnrollmentStatus.ACTIVE,
            cursor=1,
            step_count=3,
        )
    )
    return engine


def _client(engine: MagicMock) -> TestClient:
    app = FastAPI()
    app.include_router(create_automation_router(engine))
    return TestClient(app)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def test_appointment_event_returns_report() -> None:
    engine = _mock_engine()
    resp = _client(engine).post(
        "/automation/events/appointments",
        json={"org_id": "org-1", "appointment_id": "appt-1", "change_type": "completed"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["handled"] is True
    assert body["report"]["matched"] == ["wf-1"]
    engine.on_appointment_event.assert_awaited_once_with("org-1", "appt-1", "completed", {})


def test_unmapped_client_event_is_not_handled() -> None:
    engine = _mock_engine()
    resp = _client(engine).post(
        "/automation/events/clients",
        json={"org_id": "org-1", "client_id": "client-1", "change_type": "merged"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"handled": False, "report": None}


# ---------------------------------------------------------------------------
# Explicit execution
# ---------------------------------------------------------------------------


def test_execute_workflow_accepted() -> None:
    engine = _mock_engine()
    resp = _client(engine).post(
        "/automation/workflows/wf-1/execute",
        json={"org_id": "org-1", "context_data": {"client_id": "client-1"}},
    )

    assert resp.status_code == 202
    assert resp.json() == {"execution_id": "enr-1"}
    engine.execute_workflow.assert_awaited_once_with(
        "org-1", "wf-1", None, {"client_id": "client-1"}
    )


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (WorkflowNotFoundError("missing", code="WORKFLOW_NOT_FOUND"), 404),
        (ClientNotFoundError("missing", code="CLIENT_NOT_FOUND"), 404),
        (WorkflowInactiveError("off", code="WORKFLOW_INACTIVE"), 409),
        (DuplicateEnrollmentError("dup", code="DUPLICATE_ENROLLMENT"), 409),
        (CareflowError("no client", code="CLIENT_ID_REQUIRED"), 400),
    ],
)
def test_execute_workflow_error_mapping(error: CareflowError, status: int) -> None:
    engine = _mock_engine()
    engine.execute_workflow = AsyncMock(side_effect=error)

    resp = _client(engine).post("/automation/workflows/wf-1/execute", json={"org_id": "org-1"})

    assert resp.status_code == status
    assert resp.json()["detail"]["code"] == error.code


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def test_execution_status() -> None:
    resp = _client(_mock_engine()).get("/automation/executions/enr-1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "active"
    assert body["step_count"] == 3
    assert body["log"] == []


def test_execution_status_not_found() -> None:
    engine = _mock_engine()
    engine.get_execution_status = AsyncMock(
        side_effect=ExecutionNotFoundError("nope", code="EXECUTION_NOT_FOUND")
    )

    resp = _client(engine).get("/automation/executions/nope")

    assert resp.status_code == 404
    assert resp.json()["detail"] == {"code": "EXECUTION_NOT_FOUND", "message": "nope"}
