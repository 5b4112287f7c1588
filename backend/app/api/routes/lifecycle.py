"""
Case Lifecycle API Routes

REST endpoints wrapping the case lifecycle service. The acting user and role
come from the X-User-ID and X-User-Role headers set by the auth gateway.

Lifecycle Operations:
- Initialize: start a case at (intake, intake)
- Transition: move a case to another phase with full validation
- Status: change the status of a case within its phase
- Milestones: record milestone events
- Approvals: list, approve and reject transitions held for approval
- Read: progress, audit events, available transitions, phase requirements

Errors raised by the service are rendered by the global error handlers.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response, status

from backend.app.api.deps import Actor, get_actor, get_lifecycle_service
from backend.app.models.api.lifecycle_schemas import (
    ApiResponse,
    ApprovalDecisionRequest,
    ApprovalRejectionRequest,
    ApprovalResponse,
    CaseProgressResponse,
    LifecycleEventResponse,
    LifecycleInitRequest,
    MilestoneRequest,
    PhaseRequirementsResponse,
    PhaseTransitionRequest,
    StatusUpdateRequest,
    TransitionResponse,
)
from backend.app.models.domain.lifecycle import CasePhase, CaseType
from backend.app.services.lifecycle_service import CaseLifecycleService
from backend.app.utils.logging import (
    get_logger,
    log_route_entry,
    log_route_exit,
    performance_context,
)

logger = get_logger(__name__)
router = APIRouter()


@router.get(
    "/requirements/{phase}",
    response_model=PhaseRequirementsResponse,
    summary="Get Phase Requirements",
    description="Requirements, duration, critical tasks and deliverables of a phase for a case type"
)
async def get_phase_requirements(
    request: Request,
    phase: CasePhase = Path(..., description="Lifecycle phase"),
    case_type: CaseType = Query(CaseType.OTHER, description="Case type"),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> PhaseRequirementsResponse:
    """Get the requirements of a phase."""
    log_route_entry(request, phase=phase.value, case_type=case_type.value)
    requirements = lifecycle_service.get_phase_requirements(phase, case_type)
    log_route_exit(request, status_code=200)
    return PhaseRequirementsResponse.from_requirements(requirements, case_type)


@router.get(
    "/approvals",
    response_model=List[ApprovalResponse],
    summary="List Pending Approvals",
    description="Pending transition approvals the acting role may decide, newest first"
)
async def list_pending_approvals(
    request: Request,
    case_id: Optional[str] = Query(None, description="Only approvals of this case"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> List[ApprovalResponse]:
    log_route_entry(request, case_id=case_id, actor_role=actor.role.value)
    approvals = await lifecycle_service.list_pending_approvals(case_id=case_id, approver_role=actor.role)
    log_route_exit(request, status_code=200, approval_count=len(approvals))
    return [ApprovalResponse.from_approval(approval) for approval in approvals]


@router.post(
    "/approvals/{approval_id}/approve",
    response_model=TransitionResponse,
    summary="Approve Transition",
    description="Approve a pending transition and execute it with the requester's role and metadata"
)
async def approve_transition(
    request: Request,
    decision: ApprovalDecisionRequest,
    approval_id: str = Path(..., description="Approval identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> TransitionResponse:
    """Approve a transition held for approval."""
    log_route_entry(request, approval_id=approval_id, actor_role=actor.role.value)

    with performance_context("route_approve_transition", approval_id=approval_id, user_id=actor.user_id):
        result = await lifecycle_service.approve_transition(
            approval_id,
            actor.user_id,
            actor.role,
            decision.reason
        )

    result.raise_for_errors()
    log_route_exit(request, status_code=200, approval_id=approval_id, case_id=result.case_id)
    return TransitionResponse.from_result(result)


@router.post(
    "/approvals/{approval_id}/reject",
    response_model=ApprovalResponse,
    summary="Reject Transition",
    description="Reject a pending transition; the requester is notified with the reason"
)
async def reject_transition(
    request: Request,
    decision: ApprovalRejectionRequest,
    approval_id: str = Path(..., description="Approval identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> ApprovalResponse:
    log_route_entry(request, approval_id=approval_id, actor_role=actor.role.value)
    approval = await lifecycle_service.reject_transition(
        approval_id,
        actor.user_id,
        actor.role,
        decision.reason
    )
    log_route_exit(request, status_code=200, approval_id=approval_id, case_id=approval.case_id)
    return ApprovalResponse.from_approval(approval)


@router.post(
    "/{case_id}/lifecycle",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initialize Case Lifecycle",
    description="Start the lifecycle of a case in the intake phase"
)
async def initialize_lifecycle(
    request: Request,
    init_request: LifecycleInitRequest,
    case_id: str = Path(..., description="Case identifier", min_length=1),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> ApiResponse:
    """Initialize the lifecycle of a case."""
    log_route_entry(request, case_id=case_id, case_type=init_request.case_type.value)

    with performance_context("route_initialize_lifecycle", case_id=case_id, user_id=actor.user_id):
        events = await lifecycle_service.initialize_case_lifecycle(
            case_id,
            init_request.case_type,
            actor.user_id,
            init_request.metadata
        )

    log_route_exit(request, status_code=status.HTTP_201_CREATED, case_id=case_id)
    return ApiResponse(
        success=True,
        message="Case lifecycle initialized",
        data={
            "case_id": case_id,
            "phase": CasePhase.INTAKE.value,
            "events": [LifecycleEventResponse.from_event(e).model_dump(mode="json") for e in events],
        }
    )


@router.post(
    "/{case_id}/phase",
    response_model=TransitionResponse,
    summary="Transition Case Phase",
    description=(
        "Move a case to another lifecycle phase; all validation failures are reported together. "
        "Answers 202 with the pending approval when the transition needs one."
    )
)
async def transition_phase(
    request: Request,
    response: Response,
    transition_request: PhaseTransitionRequest,
    case_id: str = Path(..., description="Case identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> TransitionResponse:
    """Transition a case to a new phase."""
    log_route_entry(
        request,
        case_id=case_id,
        target_phase=transition_request.target_phase.value,
        actor_role=actor.role.value
    )

    with performance_context(
        "route_transition_phase",
        case_id=case_id,
        target_phase=transition_request.target_phase.value
    ):
        result = await lifecycle_service.transition_to_phase(
            case_id,
            transition_request.target_phase,
            actor.user_id,
            actor.role,
            transition_request.metadata,
            transition_request.reason
        )

    result.raise_for_errors()
    response.status_code = status.HTTP_202_ACCEPTED if result.awaiting_approval else status.HTTP_200_OK
    log_route_exit(request, status_code=response.status_code, case_id=case_id, to_phase=result.to_phase.value)
    return TransitionResponse.from_result(result)


@router.patch(
    "/{case_id}/status",
    response_model=LifecycleEventResponse,
    summary="Update Case Status",
    description="Change case status within the current phase"
)
async def update_status(
    request: Request,
    status_request: StatusUpdateRequest,
    case_id: str = Path(..., description="Case identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> LifecycleEventResponse:
    """Update the status of a case."""
    log_route_entry(request, case_id=case_id, new_status=status_request.status.value)

    event = await lifecycle_service.update_case_status(
        case_id,
        status_request.status,
        actor.user_id,
        status_request.reason
    )

    log_route_exit(request, status_code=200, case_id=case_id)
    return LifecycleEventResponse.from_event(event)


@router.post(
    "/{case_id}/milestones",
    response_model=LifecycleEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record Milestone"
)
async def record_milestone(
    request: Request,
    milestone_request: MilestoneRequest,
    case_id: str = Path(..., description="Case identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> LifecycleEventResponse:
    log_route_entry(request, case_id=case_id)
    event = await lifecycle_service.record_milestone(
        case_id,
        actor.user_id,
        milestone_request.description,
        milestone_request.metadata
    )
    log_route_exit(request, status_code=status.HTTP_201_CREATED, case_id=case_id)
    return LifecycleEventResponse.from_event(event)


@router.post(
    "/{case_id}/tasks/retry",
    response_model=ApiResponse,
    summary="Retry Phase Entry Tasks",
    description="Create the missing entry tasks of the current phase after a degraded transition"
)
async def retry_phase_entry_tasks(
    request: Request,
    case_id: str = Path(..., description="Case identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> ApiResponse:
    log_route_entry(request, case_id=case_id)
    report = await lifecycle_service.retry_phase_entry_tasks(case_id, actor.user_id)
    log_route_exit(request, status_code=200, case_id=case_id, created=len(report.created))
    return ApiResponse(
        success=True,
        message=f"{len(report.created)} task(s) created",
        data=report.to_dict()
    )


@router.get(
    "/{case_id}/progress",
    response_model=CaseProgressResponse,
    summary="Get Case Progress"
)
async def get_progress(
    request: Request,
    case_id: str = Path(..., description="Case identifier"),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> CaseProgressResponse:
    """Get progress, milestones and estimated completion of a case."""
    log_route_entry(request, case_id=case_id)
    progress = await lifecycle_service.get_case_progress(case_id)
    log_route_exit(request, status_code=200, case_id=case_id)
    return CaseProgressResponse.from_progress(progress)


@router.get(
    "/{case_id}/events",
    response_model=List[LifecycleEventResponse],
    summary="List Lifecycle Events"
)
async def list_events(
    request: Request,
    case_id: str = Path(..., description="Case identifier"),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> List[LifecycleEventResponse]:
    """Audit trail of a case in chronological order."""
    log_route_entry(request, case_id=case_id)
    events = await lifecycle_service.get_lifecycle_events(case_id)
    log_route_exit(request, status_code=200, case_id=case_id, event_count=len(events))
    return [LifecycleEventResponse.from_event(event) for event in events]


@router.get(
    "/{case_id}/transitions",
    response_model=List[TransitionResponse],
    summary="List Available Transitions",
    description="Declared transitions the acting role may perform, with what currently blocks each"
)
async def list_transitions(
    request: Request,
    case_id: str = Path(..., description="Case identifier"),
    actor: Actor = Depends(get_actor),
    lifecycle_service: CaseLifecycleService = Depends(get_lifecycle_service)
) -> List[TransitionResponse]:
    log_route_entry(request, case_id=case_id, actor_role=actor.role.value)
    results = await lifecycle_service.get_available_transitions(case_id, actor.role)
    log_route_exit(request, status_code=200, case_id=case_id)
    return [TransitionResponse.from_result(result) for result in results]
