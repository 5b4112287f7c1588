"""
Unit tests for phase-entry task creation.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.exceptions import DatabaseError, TaskCreationError
from backend.app.models.domain.lifecycle import CasePhase, CaseType, TaskPriority
from backend.app.repositories.memory.lifecycle_repository import InMemoryTaskRepository
from backend.app.services.task_service import CASE_TYPE_ENTRY_TASKS, PHASE_ENTRY_TASKS, TaskService


class UnreliableTaskRepository(InMemoryTaskRepository):
    """Task repository that rejects selected titles."""

    def __init__(self, failing_titles=(), error_type=TaskCreationError):
        super().__init__()
        self.failing_titles = set(failing_titles)
        self.error_type = error_type

    async def create_task(self, request):
        if request.title in self.failing_titles:
            if self.error_type is TaskCreationError:
                raise TaskCreationError("task backend unavailable", case_id=request.case_id, task_title=request.title)
            raise self.error_type("task collection unavailable")
        return await super().create_task(request)


class TestPhaseEntryTasks:
    """Test suite for TaskService.create_phase_entry_tasks."""

    def setup_method(self):
        self.now = datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc)
        self.repository = InMemoryTaskRepository()
        self.service = TaskService(self.repository)

    def test_every_phase_has_entry_tasks(self):
        assert set(PHASE_ENTRY_TASKS) == set(CasePhase)

    async def test_intake_tasks(self):
        report = await self.service.create_phase_entry_tasks("CASE-1", CasePhase.INTAKE, "attorney-1", self.now)

        assert report.succeeded
        assert [task.title for task in report.created] == [
            "Complete client intake form",
            "Conduct risk assessment",
        ]
        assert [task.due_date for task in report.created] == [
            self.now + timedelta(days=3),
            self.now + timedelta(days=5),
        ]
        assert all(task.priority is TaskPriority.HIGH for task in report.created)
        assert all(task.assigned_to == "attorney-1" for task in report.created)
        assert all(task.phase is CasePhase.INTAKE for task in report.created)

    async def test_closure_task(self):
        report = await self.service.create_phase_entry_tasks("CASE-1", CasePhase.CLOSURE, "archivist-1", self.now)

        assert len(report.created) == 1
        task = report.created[0]
        assert task.title == "Archive case file"
        assert task.priority is TaskPriority.LOW
        assert task.due_date == self.now + timedelta(days=7)

    async def test_default_assignee(self):
        service = TaskService(self.repository, default_assignee="case-manager")

        report = await service.create_phase_entry_tasks("CASE-1", CasePhase.PROCEEDINGS, "attorney-1", self.now)

        assert report.created[0].assigned_to == "case-manager"
        assert report.created[0].assigned_by == "attorney-1"

    async def test_failures_do_not_stop_the_batch(self):
        service = TaskService(UnreliableTaskRepository({"Complete legal research"}))

        report = await service.create_phase_entry_tasks("CASE-1", CasePhase.PREPARATION, "attorney-1", self.now)

        assert not report.succeeded
        assert [task.title for task in report.created] == ["Prepare necessary documents"]
        assert report.failures == [{
            "effect": "create_task",
            "phase": "preparation",
            "task_title": "Complete legal research",
            "error": "task backend unavailable",
        }]
        assert report.to_dict()["phase"] == "preparation"

    async def test_repository_errors_are_wrapped(self):
        service = TaskService(UnreliableTaskRepository({"Monitor court proceedings"}, DatabaseError))

        report = await service.create_phase_entry_tasks("CASE-1", CasePhase.PROCEEDINGS, "attorney-1", self.now)

        assert report.failures[0]["task_title"] == "Monitor court proceedings"
        assert "task collection unavailable" in report.failures[0]["error"]

    async def test_skip_titles(self):
        report = await self.service.create_phase_entry_tasks(
            "CASE-1",
            CasePhase.INTAKE,
            "attorney-1",
            self.now,
            skip_titles=["Complete client intake form"]
        )

        assert [task.title for task in report.created] == ["Conduct risk assessment"]
        assert len(await self.service.list_tasks("CASE-1")) == 1

    async def test_unexpected_repository_errors_are_reported(self):
        service = TaskService(UnreliableTaskRepository({"Archive case file"}, RuntimeError))

        report = await service.create_phase_entry_tasks("CASE-1", CasePhase.CLOSURE, "archivist-1", self.now)

        assert report.created == []
        assert report.failures[0]["task_title"] == "Archive case file"
        assert "task collection unavailable" in report.failures[0]["error"]

    async def test_create_task_chains_the_original_error(self):
        service = TaskService(UnreliableTaskRepository({"Archive case file"}, ConnectionResetError))
        request = PHASE_ENTRY_TASKS[CasePhase.CLOSURE][0].to_request("CASE-1", CasePhase.CLOSURE, "a-1", self.now)

        with pytest.raises(TaskCreationError) as exc_info:
            await service.create_task(request)

        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert exc_info.value.details == {"case_id": "CASE-1", "task_title": "Archive case file"}

    async def test_cancellation_is_not_wrapped(self):
        service = TaskService(UnreliableTaskRepository({"Archive case file"}, asyncio.CancelledError))

        with pytest.raises(asyncio.CancelledError):
            await service.create_phase_entry_tasks("CASE-1", CasePhase.CLOSURE, "archivist-1", self.now)


class TestCaseTypeEntryTasks:
    """Test suite for the extra entry tasks of particular case types."""

    def setup_method(self):
        self.now = datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc)
        self.service = TaskService(InMemoryTaskRepository())

    def test_case_type_tasks_target_known_phases(self):
        assert set(CASE_TYPE_ENTRY_TASKS) == {
            (CaseType.MEDICAL_MALPRACTICE, CasePhase.PREPARATION),
            (CaseType.DIVORCE_FAMILY, CasePhase.PREPARATION),
            (CaseType.CRIMINAL_DEFENSE, CasePhase.PROCEEDINGS),
        }

    async def test_arraignment_for_criminal_defense(self):
        report = await self.service.create_phase_entry_tasks(
            "CASE-1", CasePhase.PROCEEDINGS, "attorney-1", self.now, case_type=CaseType.CRIMINAL_DEFENSE
        )

        assert [task.title for task in report.created] == [
            "Monitor court proceedings",
            "Court Appearance - Arraignment",
        ]
        arraignment = report.created[1]
        assert arraignment.due_date == self.now + timedelta(days=7)
        assert arraignment.priority is TaskPriority.HIGH
        assert arraignment.phase is CasePhase.PROCEEDINGS

    async def test_expert_consultation_for_medical_malpractice(self):
        report = await self.service.create_phase_entry_tasks(
            "CASE-1", CasePhase.PREPARATION, "attorney-1", self.now, case_type=CaseType.MEDICAL_MALPRACTICE
        )

        consultation = report.created[-1]
        assert len(report.created) == 3
        assert consultation.title == "Schedule Medical Expert Consultation"
        assert consultation.due_date == self.now + timedelta(days=14)
        assert consultation.priority is TaskPriority.HIGH

    async def test_mediation_for_divorce(self):
        report = await self.service.create_phase_entry_tasks(
            "CASE-1", CasePhase.PREPARATION, "attorney-1", self.now, case_type=CaseType.DIVORCE_FAMILY
        )

        assert report.created[-1].title == "Mediation Session"
        assert report.created[-1].due_date == self.now + timedelta(days=21)

    async def test_other_case_types_get_phase_tasks_only(self):
        criminal_preparation = TaskService.phase_entry_templates(CasePhase.PREPARATION, CaseType.CRIMINAL_DEFENSE)
        labor_proceedings = TaskService.phase_entry_templates(CasePhase.PROCEEDINGS, CaseType.LABOR_DISPUTE)

        assert criminal_preparation == PHASE_ENTRY_TASKS[CasePhase.PREPARATION]
        assert labor_proceedings == PHASE_ENTRY_TASKS[CasePhase.PROCEEDINGS]

    async def test_case_type_task_failures_are_collected(self):
        service = TaskService(UnreliableTaskRepository({"Mediation Session"}, RuntimeError))

        report = await service.create_phase_entry_tasks(
            "CASE-1", CasePhase.PREPARATION, "attorney-1", self.now, case_type=CaseType.DIVORCE_FAMILY
        )

        assert len(report.created) == 2
        assert [failure["task_title"] for failure in report.failures] == ["Mediation Session"]
