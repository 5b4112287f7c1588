"""
Task service for lifecycle follow-up work.

Wraps the task repository and owns the phase-entry task templates: entering
a phase creates a fixed set of tasks assigned to the acting user and due a
fixed number of days after entry. Some case types add their own work on top,
e.g. a criminal defense case entering proceedings gets an arraignment task.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend.app.core.exceptions import TaskCreationError
from backend.app.models.domain.lifecycle import (
    CasePhase,
    CaseType,
    LifecycleTask,
    TaskPriority,
    TaskRequest,
)
from backend.app.repositories.base import TaskRepository
from backend.app.utils.logging import get_logger, performance_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class TaskTemplate:
    title: str
    description: str
    due_in_days: int
    priority: TaskPriority

    def to_request(
        self,
        case_id: str,
        phase: CasePhase,
        actor_id: str,
        now: datetime,
        assigned_to: Optional[str] = None
    ) -> TaskRequest:
        return TaskRequest(
            case_id=case_id,
            title=self.title,
            description=self.description,
            assigned_to=assigned_to or actor_id,
            assigned_by=actor_id,
            due_date=now + timedelta(days=self.due_in_days),
            priority=self.priority,
            phase=phase,
        )


PHASE_ENTRY_TASKS: Dict[CasePhase, Tuple[TaskTemplate, ...]] = {
    CasePhase.INTAKE: (
        TaskTemplate(
            "Complete client intake form",
            "Gather all necessary client information and documentation",
            3, TaskPriority.HIGH,
        ),
        TaskTemplate(
            "Conduct risk assessment",
            "Assess case risks and determine viability",
            5, TaskPriority.HIGH,
        ),
    ),
    CasePhase.PREPARATION: (
        TaskTemplate(
            "Complete legal research",
            "Research relevant laws and precedents",
            14, TaskPriority.MEDIUM,
        ),
        TaskTemplate(
            "Prepare necessary documents",
            "Draft and prepare all required legal documents",
            21, TaskPriority.MEDIUM,
        ),
    ),
    CasePhase.PROCEEDINGS: (
        TaskTemplate(
            "Monitor court proceedings",
            "Track and manage all court appearances and filings",
            90, TaskPriority.MEDIUM,
        ),
    ),
    CasePhase.RESOLUTION: (
        TaskTemplate(
            "Finalize case resolution",
            "Complete all post-proceeding requirements and documentation",
            30, TaskPriority.MEDIUM,
        ),
    ),
    CasePhase.CLOSURE: (
        TaskTemplate(
            "Archive case file",
            "Complete case archival and final documentation",
            7, TaskPriority.LOW,
        ),
    ),
}

# Extra entry work for particular case types, created after the phase's own tasks.
CASE_TYPE_ENTRY_TASKS: Dict[Tuple[CaseType, CasePhase], Tuple[TaskTemplate, ...]] = {
    (CaseType.MEDICAL_MALPRACTICE, CasePhase.PREPARATION): (
        TaskTemplate(
            "Schedule Medical Expert Consultation",
            "Arrange consultation with medical expert for case evaluation",
            14, TaskPriority.HIGH,
        ),
    ),
    (CaseType.DIVORCE_FAMILY, CasePhase.PREPARATION): (
        TaskTemplate(
            "Mediation Session",
            "Court-ordered mediation session",
            21, TaskPriority.MEDIUM,
        ),
    ),
    (CaseType.CRIMINAL_DEFENSE, CasePhase.PROCEEDINGS): (
        TaskTemplate(
            "Court Appearance - Arraignment",
            "Initial court appearance for arraignment",
            7, TaskPriority.HIGH,
        ),
    ),
}



@dataclass
class TaskCreationReport:
    """Outcome of a batch of phase-entry tasks. Failures do not stop the batch."""

    phase: CasePhase
    created: List[LifecycleTask] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "created": [task.to_dict() for task in self.created],
            "failures": list(self.failures),
        }


class TaskService:
    """Creates and lists lifecycle tasks through a TaskRepository."""

    def __init__(self, repository: TaskRepository, default_assignee: Optional[str] = None):
        self.repository = repository
        self.default_assignee = default_assignee

    @staticmethod
    def phase_entry_templates(
        phase: CasePhase,
        case_type: Optional[CaseType] = None
    ) -> Tuple[TaskTemplate, ...]:
        templates = PHASE_ENTRY_TASKS.get(phase, ())
        if case_type is not None:
            templates += CASE_TYPE_ENTRY_TASKS.get((case_type, phase), ())
        return templates

    async def create_task(self, request: TaskRequest) -> LifecycleTask:
        """
        Create a single task.

        Raises:
            TaskCreationError: on any repository failure
        """
        try:
            return await self.repository.create_task(request)
        except TaskCreationError:
            raise
        except Exception as e:
            raise TaskCreationError(
                f"Failed to create task '{request.title}': {e}",
                case_id=request.case_id,
                task_title=request.title
            ) from e

    async def create_phase_entry_tasks(
        self,
        case_id: str,
        phase: CasePhase,
        actor_id: str,
        now: Optional[datetime] = None,
        skip_titles: Iterable[str] = (),
        case_type: Optional[CaseType] = None
    ) -> TaskCreationReport:
        """
        Create the entry tasks of ``phase`` for a case.

        Every template is attempted; failures are collected in the report.
        ``case_type`` adds the case-type specific templates for the phase.
        Templates whose title is in ``skip_titles`` are not created again.
        """
        now = now or datetime.now(timezone.utc)
        skip = set(skip_titles)
        report = TaskCreationReport(phase=phase)

        with performance_context("create_phase_entry_tasks", case_id=case_id, phase=phase.value):
            for template in self.phase_entry_templates(phase, case_type):
                if template.title in skip:
                    continue
                request = template.to_request(case_id, phase, actor_id, now, self.default_assignee)
                try:
                    report.created.append(await self.create_task(request))
                except TaskCreationError as e:
                    logger.warning(
                        "Phase entry task creation failed",
                        case_id=case_id,
                        phase=phase.value,
                        task_title=template.title,
                        error=e.message
                    )
                    report.failures.append({
                        "effect": "create_task",
                        "phase": phase.value,
                        "task_title": template.title,
                        "error": e.message,
                    })

        logger.info(
            "Phase entry tasks processed",
            case_id=case_id,
            phase=phase.value,
            created=len(report.created),
            failed=len(report.failures)
        )
        return report

    async def list_tasks(self, case_id: str) -> List[LifecycleTask]:
        return await self.repository.list_tasks(case_id)

    async def list_open_tasks(self, case_id: str) -> List[LifecycleTask]:
        return await self.repository.list_open_tasks(case_id)
