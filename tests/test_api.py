"""
API tests for the case lifecycle routes.

The application runs against a fresh in-memory lifecycle service per test;
the lifespan is not started, so no database is needed.
"""

import pytest
from fastapi.testclient import TestClient

from backend.app.api.deps import set_lifecycle_service
from backend.app.core.exceptions import TaskCreationError
from backend.app.core.state_machine import ADMIN_ONLY, CaseStateMachine
from backend.app.models.domain.lifecycle import CasePhase, CaseType
from backend.app.repositories.memory.lifecycle_repository import (
    InMemoryCaseLifecycleRepository,
    InMemoryTaskRepository,
)
from backend.app.services.lifecycle_service import CaseLifecycleService
from backend.app.services.task_service import TaskService
from backend.config.settings import Settings
from backend.main import app


ATTORNEY = {"X-User-ID": "attorney-1", "X-User-Role": "attorney"}
PARALEGAL = {"X-User-ID": "paralegal-1", "X-User-Role": "paralegal"}
ADMIN = {"X-User-ID": "admin-1", "X-User-Role": "admin"}

INTAKE_COMPLETE = {
    "clientInformation": "Jane Roe",
    "caseDescription": "Unpaid overtime",
    "initialContactDate": "2026-04-01",
    "riskAssessmentCompleted": True,
    "employerInformation": "Acme Logistics",
    "employeeInformation": "Jane Roe, warehouse lead",
    "employmentContract": "Signed 2021-03-01",
    "disputeDetails": "Overtime unpaid since 2025",
    "employmentDates": "2021-03-01 to present",
    "witnessStatements": "Two coworkers",
    "expertReports": "Payroll audit",
    "damageCalculations": "USD 14,200",
}


class FlakyTaskRepository(InMemoryTaskRepository):
    def __init__(self):
        super().__init__()
        self.failing_titles = set()

    async def create_task(self, request):
        if request.title in self.failing_titles:
            raise TaskCreationError("task backend unavailable", case_id=request.case_id, task_title=request.title)
        return await super().create_task(request)


class TestLifecycleApi:
    """Test suite for the lifecycle endpoints."""

    def setup_method(self):
        self.task_repository = FlakyTaskRepository()
        self.service = CaseLifecycleService(
            repository=InMemoryCaseLifecycleRepository(),
            task_service=TaskService(self.task_repository),
            settings=Settings(),
        )
        set_lifecycle_service(self.service)
        self.client = TestClient(app)

    def teardown_method(self):
        set_lifecycle_service(None)

    def _initialize(self, case_id="CASE-1", case_type="labor_dispute", metadata=None):
        return self.client.post(
            f"/api/v1/cases/{case_id}/lifecycle",
            json={"case_type": case_type, "metadata": metadata or {}},
            headers=ATTORNEY,
        )

    def test_initialize_lifecycle(self):
        response = self._initialize()

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["phase"] == "intake"
        assert body["data"]["events"][0]["event_type"] == "phase_entered"
        assert response.headers["X-Correlation-ID"]

    def test_initialize_twice_conflicts(self):
        self._initialize()

        response = self._initialize()

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "12005"

    def test_actor_headers_are_required(self):
        response = self.client.post(
            "/api/v1/cases/CASE-1/lifecycle",
            json={"case_type": "other"},
        )

        assert response.status_code == 422

    def test_unknown_role_is_rejected(self):
        response = self.client.post(
            "/api/v1/cases/CASE-1/lifecycle",
            json={"case_type": "other"},
            headers={"X-User-ID": "u1", "X-User-Role": "judge"},
        )

        assert response.status_code == 422

    def test_invalid_metadata_key_is_rejected(self):
        response = self._initialize(metadata={"client name": "Jane"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "3001"
        assert response.json()["error"]["details"]["error_count"] == 1

    def test_transition_success(self):
        self._initialize()

        response = self.client.post(
            "/api/v1/cases/CASE-1/phase",
            json={"target_phase": "preparation", "metadata": INTAKE_COMPLETE},
            headers=ATTORNEY,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["to_phase"] == "preparation"
        assert [event["event_type"] for event in body["events"]] == ["phase_completed", "phase_entered"]
        assert len(body["tasks_created"]) == 2

    def test_transition_failure_lists_every_reason(self):
        self._initialize(case_type="criminal_defense", metadata={"clientInformation": "John Doe"})

        response = self.client.post(
            "/api/v1/cases/CASE-1/phase",
            json={"target_phase": "preparation"},
            headers=PARALEGAL,
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "12002"
        assert error["category"] == "validation"
        assert "arrestDate" in error["details"]["missing_fields"]
        assert any(reason.startswith("Role paralegal") for reason in error["details"]["errors"])

    def test_transition_with_degraded_tasks(self):
        self._initialize()
        self.task_repository.failing_titles = {"Complete legal research"}

        response = self.client.post(
            "/api/v1/cases/CASE-1/phase",
            json={"target_phase": "preparation", "metadata": INTAKE_COMPLETE},
            headers=ATTORNEY,
        )

        assert response.status_code == 207
        body = response.json()
        assert body["error"]["code"] == "12007"
        assert body["error"]["retryable"] is True
        assert body["data"]["success"] is True
        assert body["data"]["to_phase"] == "preparation"
        assert body["error"]["details"]["failed_effects"][0]["task_title"] == "Complete legal research"

        self.task_repository.failing_titles = set()
        retry = self.client.post("/api/v1/cases/CASE-1/tasks/retry", headers=ATTORNEY)

        assert retry.status_code == 200
        assert [task["title"] for task in retry.json()["data"]["created"]] == ["Complete legal research"]

    def test_status_update(self):
        self._initialize()

        response = self.client.patch(
            "/api/v1/cases/CASE-1/status",
            json={"status": "active", "reason": "Retainer signed"},
            headers=ATTORNEY,
        )

        assert response.status_code == 200
        assert response.json()["metadata"] == {
            "from_status": "intake",
            "to_status": "active",
            "reason": "Retainer signed",
        }

    def test_illegal_status_update(self):
        self._initialize()

        response = self.client.patch(
            "/api/v1/cases/CASE-1/status",
            json={"status": "completed"},
            headers=ATTORNEY,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "12003"

    def test_milestone_and_events(self):
        self._initialize()

        created = self.client.post(
            "/api/v1/cases/CASE-1/milestones",
            json={"description": "Employment records received"},
            headers=PARALEGAL,
        )
        events = self.client.get("/api/v1/cases/CASE-1/events")

        assert created.status_code == 201
        assert [event["event_type"] for event in events.json()] == ["phase_entered", "milestone_reached"]

    def test_progress(self):
        self._initialize()

        response = self.client.get("/api/v1/cases/CASE-1/progress")

        assert response.status_code == 200
        body = response.json()
        assert body["current_phase"] == "intake"
        assert body["progress_percentage"] == 0
        assert body["upcoming_milestones"] == ["Complete client intake form", "Conduct risk assessment"]

    def test_available_transitions(self):
        self._initialize(metadata=INTAKE_COMPLETE)

        attorney = self.client.get("/api/v1/cases/CASE-1/transitions", headers=ATTORNEY)
        paralegal = self.client.get("/api/v1/cases/CASE-1/transitions", headers=PARALEGAL)

        assert [preview["to_phase"] for preview in attorney.json()] == ["preparation", "closure"]
        assert paralegal.json() == []

    def test_phase_requirements(self):
        response = self.client.get("/api/v1/cases/requirements/intake", params={"case_type": "criminal_defense"})

        assert response.status_code == 200
        body = response.json()
        assert body["case_type"] == "criminal_defense"
        assert "policeReports" in body["requirements"]

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/v1/cases/CASE-404/progress"),
        ("get", "/api/v1/cases/CASE-404/events"),
    ])
    def test_unknown_case(self, method, path):
        response = getattr(self.client, method)(path)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "4001"

    def test_correlation_id_is_echoed(self):
        response = self.client.get("/api/v1/cases/CASE-404/progress", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"
        assert response.json()["correlation_id"] == "req-42"

    def test_health(self):
        response = self.client.get("/health")

        assert response.status_code == 200
        assert response.json()["services"]["lifecycle_service"] == "healthy"

    def test_unknown_route_is_rejected(self):
        response = self.client.get("/api/v1/unknown")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "3002"

    def test_error_metrics(self):
        self.client.get("/api/v1/cases/CASE-404/progress")

        response = self.client.get("/api/v1/health/errors")

        metrics = response.json()["metrics"]
        assert metrics["total_errors"] >= 1
        assert metrics["error_counts_by_category"]["resource"] >= 1

    def test_initialize_with_degraded_tasks(self):
        self.task_repository.failing_titles = {"Conduct risk assessment"}

        response = self._initialize()

        assert response.status_code == 207
        body = response.json()
        assert body["error"]["code"] == "12007"
        assert [event["event_type"] for event in body["data"]] == ["phase_entered"]


class TestApprovalApi:
    """Test suite for the transition approval endpoints."""

    def setup_method(self):
        self.service = CaseLifecycleService(
            repository=InMemoryCaseLifecycleRepository(),
            task_service=TaskService(InMemoryTaskRepository()),
            state_machine=CaseStateMachine(approval_rules={CaseType.OTHER: {CasePhase.PREPARATION: ADMIN_ONLY}}),
            settings=Settings(),
        )
        set_lifecycle_service(self.service)
        self.client = TestClient(app)
        self.client.post(
            "/api/v1/cases/CASE-1/lifecycle",
            json={"case_type": "other", "metadata": {}},
            headers=ATTORNEY,
        )

    def teardown_method(self):
        set_lifecycle_service(None)

    def _request_transition(self):
        return self.client.post(
            "/api/v1/cases/CASE-1/phase",
            json={"target_phase": "preparation", "metadata": INTAKE_COMPLETE, "reason": "Ready for research"},
            headers=ATTORNEY,
        )

    def test_transition_needing_approval_is_accepted(self):
        response = self._request_transition()

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is False
        assert body["approval_required"] is True
        assert body["approval"]["status"] == "pending"
        assert body["approval"]["reason"] == "Ready for research"
        assert body["approval"]["approver_roles"] == ["admin"]
        assert body["events"] == []

    def test_pending_approvals_are_listed_for_approvers(self):
        approval_id = self._request_transition().json()["approval"]["approval_id"]

        admin_view = self.client.get("/api/v1/cases/approvals", headers=ADMIN)
        attorney_view = self.client.get("/api/v1/cases/approvals", headers=ATTORNEY)

        assert admin_view.status_code == 200
        assert [approval["approval_id"] for approval in admin_view.json()] == [approval_id]
        assert attorney_view.json() == []

    def test_approve(self):
        approval_id = self._request_transition().json()["approval"]["approval_id"]

        response = self.client.post(
            f"/api/v1/cases/approvals/{approval_id}/approve",
            json={"reason": "Conflict check passed"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["to_phase"] == "preparation"
        assert body["approval"]["status"] == "approved"
        assert body["approval"]["decided_by"] == "admin-1"
        assert len(body["tasks_created"]) == 2

    def test_approve_by_requester_role_is_denied(self):
        approval_id = self._request_transition().json()["approval"]["approval_id"]

        response = self.client.post(f"/api/v1/cases/approvals/{approval_id}/approve", json={}, headers=ATTORNEY)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "12008"

    def test_reject(self):
        approval_id = self._request_transition().json()["approval"]["approval_id"]

        response = self.client.post(
            f"/api/v1/cases/approvals/{approval_id}/reject",
            json={"reason": "Risk assessment incomplete"},
            headers=ADMIN,
        )
        again = self.client.post(
            f"/api/v1/cases/approvals/{approval_id}/approve",
            json={},
            headers=ADMIN,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["decision_reason"] == "Risk assessment incomplete"
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "12009"

    def test_reject_requires_reason(self):
        approval_id = self._request_transition().json()["approval"]["approval_id"]

        response = self.client.post(f"/api/v1/cases/approvals/{approval_id}/reject", json={}, headers=ADMIN)

        assert response.status_code == 422

    def test_unknown_approval(self):
        response = self.client.post("/api/v1/cases/approvals/APR_MISSING/approve", json={}, headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "4002"
