"""
In-process repositories for case lifecycle state, tasks and approvals.

Used for tests and single-process deployments. Each write completes without
awaiting, so it is atomic with respect to other coroutines on the loop.
"""

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from backend.app.core.exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    CaseNotFoundError,
    LifecycleAlreadyInitializedError,
    StateConflictError,
)
from backend.app.models.domain.lifecycle import (
    ApprovalStatus,
    CaseSnapshot,
    LifecycleEvent,
    LifecycleTask,
    TaskRequest,
    TransitionApproval,
)
from backend.app.repositories.base import ApprovalRepository, CaseLifecycleRepository, TaskRepository
from backend.app.utils.logging import persistence_logger, get_logger

logger = get_logger(__name__)


class InMemoryCaseLifecycleRepository(CaseLifecycleRepository):
    """Dictionary-backed lifecycle storage with optimistic versioning."""

    def __init__(self):
        self._cases: Dict[str, CaseSnapshot] = {}
        self._events: Dict[str, List[LifecycleEvent]] = defaultdict(list)

    async def create_case(self, snapshot: CaseSnapshot, events: Sequence[LifecycleEvent]) -> None:
        if snapshot.case_id in self._cases:
            raise LifecycleAlreadyInitializedError(snapshot.case_id)
        self._cases[snapshot.case_id] = snapshot
        self._events[snapshot.case_id].extend(events)
        persistence_logger.operation_completed(
            backend="memory",
            operation="create_case",
            documents=1
        )

    async def load_case(self, case_id: str) -> Optional[CaseSnapshot]:
        return self._cases.get(case_id)

    async def commit_changes(
        self,
        snapshot: CaseSnapshot,
        expected_version: int,
        events: Sequence[LifecycleEvent]
    ) -> None:
        stored = self._cases.get(snapshot.case_id)
        if stored is None:
            raise CaseNotFoundError(snapshot.case_id)
        if stored.version != expected_version:
            raise StateConflictError(
                snapshot.case_id,
                expected_version=expected_version,
                actual_version=stored.version
            )
        self._cases[snapshot.case_id] = snapshot
        self._events[snapshot.case_id].extend(events)
        persistence_logger.operation_completed(
            backend="memory",
            operation="commit_changes",
            documents=len(events)
        )

    async def list_events(self, case_id: str) -> List[LifecycleEvent]:
        return sorted(self._events.get(case_id, []), key=lambda event: event.sort_key)


class InMemoryTaskRepository(TaskRepository):
    """Dictionary-backed task storage."""

    def __init__(self):
        self._tasks: Dict[str, List[LifecycleTask]] = defaultdict(list)

    async def create_task(self, request: TaskRequest) -> LifecycleTask:
        task = LifecycleTask.from_request(request)
        self._tasks[request.case_id].append(task)
        logger.debug("Task created", case_id=request.case_id, task_id=task.task_id, title=task.title)
        return task

    async def list_tasks(self, case_id: str) -> List[LifecycleTask]:
        return list(self._tasks.get(case_id, []))


class InMemoryApprovalRepository(ApprovalRepository):
    """Dictionary-backed approval storage."""

    def __init__(self):
        self._approvals: Dict[str, TransitionApproval] = {}

    async def create_approval(self, approval: TransitionApproval) -> None:
        self._approvals[approval.approval_id] = approval
        persistence_logger.operation_completed(
            backend="memory",
            operation="create_approval",
            documents=1
        )

    async def load_approval(self, approval_id: str) -> Optional[TransitionApproval]:
        return self._approvals.get(approval_id)

    async def save_decision(self, approval: TransitionApproval) -> None:
        stored = self._approvals.get(approval.approval_id)
        if stored is None:
            raise ApprovalNotFoundError(approval.approval_id)
        if not stored.is_pending:
            raise ApprovalAlreadyDecidedError(approval.approval_id, stored.status.value)
        self._approvals[approval.approval_id] = approval

    async def list_approvals(
        self,
        case_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None
    ) -> List[TransitionApproval]:
        matching = [
            approval for approval in self._approvals.values()
            if (case_id is None or approval.case_id == case_id)
            and (status is None or approval.status is status)
        ]
        return sorted(matching, key=lambda approval: approval.created_at, reverse=True)
