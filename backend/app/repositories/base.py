"""
Persistence interfaces consumed by the lifecycle orchestrator.

Implementations must apply a case state change and its lifecycle events as
one atomic unit and reject writes whose expected version no longer matches
the stored version.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from backend.app.models.domain.lifecycle import (
    ApprovalStatus,
    CaseSnapshot,
    LifecycleEvent,
    LifecycleTask,
    TaskRequest,
    TransitionApproval,
)


class CaseLifecycleRepository(ABC):
    """Storage of case lifecycle state and the per-case event stream."""

    @abstractmethod
    async def create_case(self, snapshot: CaseSnapshot, events: Sequence[LifecycleEvent]) -> None:
        """
        Store a new lifecycle with its initial events.

        Raises:
            LifecycleAlreadyInitializedError: if the case already has a lifecycle
        """

    @abstractmethod
    async def load_case(self, case_id: str) -> Optional[CaseSnapshot]:
        """Current snapshot, or None when the case has no lifecycle."""

    @abstractmethod
    async def commit_changes(
        self,
        snapshot: CaseSnapshot,
        expected_version: int,
        events: Sequence[LifecycleEvent]
    ) -> None:
        """
        Replace the stored snapshot and append ``events`` atomically.

        Raises:
            CaseNotFoundError: if the case has no lifecycle
            StateConflictError: if the stored version is not ``expected_version``
        """

    @abstractmethod
    async def list_events(self, case_id: str) -> List[LifecycleEvent]:
        """Events of the case ordered by timestamp, then sequence."""


class TaskRepository(ABC):
    """Task-creation collaborator."""

    @abstractmethod
    async def create_task(self, request: TaskRequest) -> LifecycleTask:
        """
        Persist a task.

        Raises:
            TaskCreationError: if the task cannot be created
        """

    @abstractmethod
    async def list_tasks(self, case_id: str) -> List[LifecycleTask]:
        """All tasks of the case."""

    async def list_open_tasks(self, case_id: str) -> List[LifecycleTask]:
        """Pending and in-progress tasks of the case."""
        return [task for task in await self.list_tasks(case_id) if task.is_open]


class ApprovalRepository(ABC):
    """Storage of transition approval requests."""

    @abstractmethod
    async def create_approval(self, approval: TransitionApproval) -> None:
        """Store a new pending request."""

    @abstractmethod
    async def load_approval(self, approval_id: str) -> Optional[TransitionApproval]:
        """The request, or None when it does not exist."""

    @abstractmethod
    async def save_decision(self, approval: TransitionApproval) -> None:
        """
        Store the decision carried by ``approval`` if the stored request is
        still pending.

        Raises:
            ApprovalNotFoundError: if the request does not exist
            ApprovalAlreadyDecidedError: if it was decided meanwhile
        """

    @abstractmethod
    async def list_approvals(
        self,
        case_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None
    ) -> List[TransitionApproval]:
        """Requests matching the filters, newest first."""
