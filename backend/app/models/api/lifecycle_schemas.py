"""
Pydantic API schemas for the case lifecycle endpoints.

This module defines:
- Request bodies for initialization, phase transitions, status updates
  and milestones
- Request bodies for approval decisions
- Response models mirroring the lifecycle domain projections
- The generic API response wrapper used by the error handlers
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.models.domain.lifecycle import (
    METADATA_KEY_PATTERN,
    ApprovalStatus,
    CasePhase,
    CaseProgress,
    CaseStatus,
    CaseType,
    LifecycleEvent,
    LifecycleEventType,
    LifecycleTask,
    PhaseRequirements,
    TaskPriority,
    TaskStatus,
    TransitionApproval,
    TransitionResult,
    UserRole,
)


def _check_metadata_keys(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value:
        invalid = [key for key in value if not METADATA_KEY_PATTERN.match(key)]
        if invalid:
            raise ValueError(f'Invalid metadata field names: {", ".join(invalid)}')
    return value


class LifecycleInitRequest(BaseModel):
    """Schema for starting the lifecycle of a case."""

    case_type: CaseType = Field(..., description="Legal category of the case")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Initial case metadata"
    )

    @field_validator("metadata")
    @classmethod
    def validate_metadata_keys(cls, v):
        """Reject metadata keys that are not identifier-like."""
        return _check_metadata_keys(v)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "case_type": "criminal_defense",
                "metadata": {"clientInformation": "John Doe", "caseDescription": "DUI charge"}
            }
        }
    )


class PhaseTransitionRequest(BaseModel):
    """Schema for moving a case to another phase."""

    target_phase: CasePhase = Field(..., description="Requested lifecycle phase")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Metadata merged into the case before validation"
    )
    reason: Optional[str] = Field(
        None,
        description="Shown to approvers when the transition needs approval",
        max_length=500
    )

    @field_validator("metadata")
    @classmethod
    def validate_metadata_keys(cls, v):
        """Reject metadata keys that are not identifier-like."""
        return _check_metadata_keys(v)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "target_phase": "preparation",
                "metadata": {"riskAssessmentCompleted": True}
            }
        }
    )


class StatusUpdateRequest(BaseModel):
    """Schema for updating case status within the current phase."""

    status: CaseStatus = Field(..., description="New case status")
    reason: Optional[str] = Field(
        None,
        description="Reason for status change",
        max_length=500
    )


class MilestoneRequest(BaseModel):
    """Schema for recording a milestone."""

    description: str = Field(..., min_length=1, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def validate_metadata_keys(cls, v):
        """Reject metadata keys that are not identifier-like."""
        return _check_metadata_keys(v)


class ApprovalDecisionRequest(BaseModel):
    """Schema for approving a pending transition."""

    reason: Optional[str] = Field(None, max_length=500)


class ApprovalRejectionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Sent to the requester")


class LifecycleEventResponse(BaseModel):
    event_id: str
    case_id: str
    event_type: LifecycleEventType
    phase: CasePhase
    status: Optional[CaseStatus] = None
    timestamp: datetime
    actor_id: str
    description: str
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_event(cls, event: LifecycleEvent) -> "LifecycleEventResponse":
        return cls(
            event_id=event.event_id,
            case_id=event.case_id,
            event_type=event.event_type,
            phase=event.phase,
            status=event.status,
            timestamp=event.timestamp,
            actor_id=event.actor_id,
            description=event.description,
            metadata=dict(event.metadata) if event.metadata is not None else None,
        )


class TaskResponse(BaseModel):
    task_id: str
    title: str
    assigned_to: str
    due_date: datetime
    priority: TaskPriority
    status: TaskStatus
    phase: Optional[CasePhase] = None

    @classmethod
    def from_task(cls, task: LifecycleTask) -> "TaskResponse":
        return cls(
            task_id=task.task_id,
            title=task.title,
            assigned_to=task.assigned_to,
            due_date=task.due_date,
            priority=task.priority,
            status=task.status,
            phase=task.phase,
        )


class ApprovalResponse(BaseModel):
    approval_id: str
    case_id: str
    from_phase: CasePhase
    target_phase: CasePhase
    requested_by: str
    requested_by_role: UserRole
    approver_roles: List[UserRole]
    reason: Optional[str] = None
    status: ApprovalStatus
    decided_by: Optional[str] = None
    decided_by_role: Optional[UserRole] = None
    decision_reason: Optional[str] = None
    created_at: datetime
    decided_at: Optional[datetime] = None

    @classmethod
    def from_approval(cls, approval: TransitionApproval) -> "ApprovalResponse":
        return cls(
            approval_id=approval.approval_id,
            case_id=approval.case_id,
            from_phase=approval.from_phase,
            target_phase=approval.target_phase,
            requested_by=approval.requested_by,
            requested_by_role=approval.requested_by_role,
            approver_roles=approval.approver_roles,
            reason=approval.reason,
            status=approval.status,
            decided_by=approval.decided_by,
            decided_by_role=approval.decided_by_role,
            decision_reason=approval.decision_reason,
            created_at=approval.created_at,
            decided_at=approval.decided_at,
        )


class TransitionResponse(BaseModel):
    """Outcome of a transition request, successful or not."""

    success: bool
    case_id: str
    from_phase: CasePhase
    to_phase: CasePhase
    events: List[LifecycleEventResponse] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    tasks_created: List[TaskResponse] = Field(default_factory=list)
    approval_required: bool = False
    approval: Optional[ApprovalResponse] = None

    @classmethod
    def from_result(cls, result: TransitionResult) -> "TransitionResponse":
        return cls(
            success=result.success,
            case_id=result.case_id,
            from_phase=result.from_phase,
            to_phase=result.to_phase,
            events=[LifecycleEventResponse.from_event(e) for e in result.events],
            errors=result.errors,
            warnings=result.warnings,
            recommendations=result.recommendations,
            missing_fields=result.missing_fields,
            tasks_created=[TaskResponse.from_task(t) for t in result.tasks_created],
            approval_required=result.approval_required,
            approval=ApprovalResponse.from_approval(result.approval) if result.approval else None,
        )


class CaseProgressResponse(BaseModel):
    case_id: str
    current_phase: CasePhase
    current_status: CaseStatus
    progress_percentage: int = Field(..., ge=0, le=100)
    completed_phases: List[CasePhase]
    upcoming_milestones: List[str]
    overdue_tasks: List[str]
    estimated_completion: Optional[datetime] = None
    phase_completion_percentage: int = Field(0, ge=0, le=100)

    @classmethod
    def from_progress(cls, progress: CaseProgress) -> "CaseProgressResponse":
        return cls(
            case_id=progress.case_id,
            current_phase=progress.current_phase,
            current_status=progress.current_status,
            progress_percentage=progress.progress_percentage,
            completed_phases=progress.completed_phases,
            upcoming_milestones=progress.upcoming_milestones,
            overdue_tasks=progress.overdue_tasks,
            estimated_completion=progress.estimated_completion,
            phase_completion_percentage=progress.phase_completion_percentage,
        )


class PhaseRequirementsResponse(BaseModel):
    phase: CasePhase
    case_type: CaseType
    requirements: List[str]
    estimated_duration_days: int
    critical_tasks: List[str]
    deliverables: List[str]

    @classmethod
    def from_requirements(
        cls,
        requirements: PhaseRequirements,
        case_type: CaseType
    ) -> "PhaseRequirementsResponse":
        return cls(case_type=case_type, **requirements.to_dict())


class ApiResponse(BaseModel):
    """Generic API response wrapper."""

    success: bool = Field(..., description="Whether the request was successful")
    message: Optional[str] = Field(None, description="Human-readable message")
    data: Optional[Any] = Field(None, description="Response payload")
    error: Optional[Dict[str, Any]] = Field(None, description="Error information if request failed")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID for tracking")
