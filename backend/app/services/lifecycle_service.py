"""
Case Lifecycle Service - Business Logic Layer

This module coordinates the movement of legal cases through their lifecycle.
It loads case state, runs the pure validators, commits phase and status
changes together with their lifecycle events, dispatches phase-entry tasks
and computes progress projections.

Key Features:
- Lifecycle initialization at (intake, intake)
- Phase transitions gated by the state machine, phase rule table and
  case-type validator, with every reason collected in one result
- Approval requests for transitions the acting role may not perform alone,
  executed on approval with the requester's role and metadata
- Phase-scoped status updates
- Milestone recording and audit event retrieval
- Progress, milestone and estimated-completion projections

Consistency:
- Writes to one case run under a per-case asyncio lock
- Snapshot and events are committed atomically with an optimistic version
  check, so a second process sharing the store cannot lose updates
- Phase-entry tasks run after the commit; a task failure never rolls back
  the transition and is reported as SideEffectDegradedError
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from backend.app.core import phase_rules
from backend.app.core.case_type_validator import CaseTypeValidator
from backend.app.core.exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    CaseNotFoundError,
    ErrorCode,
    LifecycleAlreadyInitializedError,
    LifecycleValidationError,
    SideEffectDegradedError,
)
from backend.app.core.state_machine import CaseStateMachine, get_state_machine
from backend.app.models.domain.lifecycle import (
    ApprovalStatus,
    CasePhase,
    CaseProgress,
    CaseSnapshot,
    CaseStatus,
    CaseType,
    LifecycleEvent,
    LifecycleEventType,
    PhaseRequirements,
    TransitionApproval,
    TransitionResult,
    UserRole,
    coerce_enum,
    validate_metadata,
)
from backend.app.repositories.base import ApprovalRepository, CaseLifecycleRepository
from backend.app.repositories.memory.lifecycle_repository import InMemoryApprovalRepository
from backend.app.services.task_service import TaskCreationReport, TaskService
from backend.app.utils.logging import (
    get_logger,
    log_business_event,
    log_security_event,
    performance_context,
)
from backend.config.settings import Settings, get_settings

logger = get_logger(__name__)


class CaseLockRegistry:
    """
    Per-case asyncio locks.

    A lock lives while at least one coroutine holds or waits for it and is
    dropped afterwards, so the registry does not grow with the case count.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, case_id: str):
        lock = self._locks.get(case_id)
        if lock is None:
            lock = self._locks[case_id] = asyncio.Lock()
        self._holders[case_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[case_id] -= 1
            if self._holders[case_id] == 0:
                del self._holders[case_id]
                del self._locks[case_id]

    def is_locked(self, case_id: str) -> bool:
        lock = self._locks.get(case_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class CaseLifecycleService:
    """
    Stateful coordinator of the case lifecycle.

    Collaborators are passed in explicitly; create_lifecycle_service wires
    the configured defaults.
    """

    def __init__(
        self,
        repository: CaseLifecycleRepository,
        task_service: TaskService,
        state_machine: Optional[CaseStateMachine] = None,
        case_type_validator: Optional[CaseTypeValidator] = None,
        lock_registry: Optional[CaseLockRegistry] = None,
        settings: Optional[Settings] = None,
        approval_repository: Optional[ApprovalRepository] = None
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.task_service = task_service
        self.state_machine = state_machine or get_state_machine()
        self.case_type_validator = case_type_validator or CaseTypeValidator(
            self.settings.lifecycle.settlement_approval_threshold
        )
        self.locks = lock_registry or CaseLockRegistry()
        self.approval_repository = approval_repository or InMemoryApprovalRepository()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def initialize_case_lifecycle(
        self,
        case_id: str,
        case_type: CaseType,
        actor_id: str,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> List[LifecycleEvent]:
        """
        Start the lifecycle of a case at (intake, intake).

        Args:
            case_id: Case identifier
            case_type: Legal category of the case
            actor_id: User initializing the case
            metadata: Initial case metadata

        Returns:
            The recorded lifecycle events (a single phase_entered event)

        Raises:
            LifecycleAlreadyInitializedError: if the case already has a lifecycle
            LifecycleValidationError: if the metadata is invalid for the case type
            SideEffectDegradedError: if intake tasks could not all be created
        """
        case_type = coerce_enum(CaseType, case_type)
        metadata = validate_metadata(metadata)

        outcome = self.case_type_validator.validate_case_type_initialization(case_type, metadata)
        if not outcome.is_valid:
            raise LifecycleValidationError(
                f"Cannot initialize lifecycle for case {case_id}",
                errors=outcome.errors,
                case_id=case_id,
            )
        if outcome.warnings:
            logger.warning(
                "Case initialized with incomplete case-type data",
                case_id=case_id,
                case_type=case_type.value,
                missing_fields=outcome.missing_fields
            )

        with performance_context("lifecycle_initialize", case_id=case_id, case_type=case_type.value):
            async with self.locks.hold(case_id):
                if await self.repository.load_case(case_id) is not None:
                    raise LifecycleAlreadyInitializedError(case_id)

                now = _utcnow()
                snapshot = CaseSnapshot.create_new(case_id, case_type, metadata, now=now)
                event = LifecycleEvent(
                    case_id=case_id,
                    event_type=LifecycleEventType.PHASE_ENTERED,
                    phase=CasePhase.INTAKE,
                    status=CaseStatus.INTAKE,
                    actor_id=actor_id,
                    description="Case lifecycle initialized in intake phase",
                    timestamp=now,
                    metadata={"case_type": case_type.value},
                    sequence=_sequence(snapshot.version, 0),
                )
                await self.repository.create_case(snapshot, [event])

        log_business_event(
            "lifecycle_initialized",
            user_id=actor_id,
            case_id=case_id,
            case_type=case_type.value
        )

        report = await self.task_service.create_phase_entry_tasks(
            case_id, CasePhase.INTAKE, actor_id, now, case_type=case_type
        )
        events = [event]
        if not report.succeeded:
            raise SideEffectDegradedError(
                f"Lifecycle of case {case_id} initialized but intake tasks failed",
                case_id=case_id,
                result=events,
                failed_effects=report.failures,
            )
        return events

    async def transition_to_phase(
        self,
        case_id: str,
        target_phase: CasePhase,
        actor_id: str,
        actor_role: UserRole,
        metadata: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None
    ) -> TransitionResult:
        """
        Move a case to ``target_phase``.

        Every validator runs and all reasons are returned together. A failed
        result leaves the case untouched. A successful one commits the merged
        metadata, the new phase and the phase_completed/phase_entered events
        as one unit; entering closure also closes the case.

        A valid transition that ``actor_role`` may not perform alone is not
        committed. The result carries a pending TransitionApproval instead;
        repeating the request returns the same pending approval.

        Raises:
            CaseNotFoundError: if the case has no lifecycle
            StateConflictError: if another writer changed the case meanwhile
            SideEffectDegradedError: if the transition committed but phase-entry
                tasks failed; ``result`` holds the committed TransitionResult
            ProgrammingError: for unrecognized phase or role values
        """
        target_phase = coerce_enum(CasePhase, target_phase)
        actor_role = coerce_enum(UserRole, actor_role)
        metadata = validate_metadata(metadata)

        with performance_context(
            "lifecycle_transition",
            case_id=case_id,
            target_phase=target_phase.value,
            actor_role=actor_role.value
        ):
            async with self.locks.hold(case_id):
                snapshot = await self._load_existing(case_id)
                result = self._evaluate_transition(snapshot, target_phase, actor_role, metadata)

                if not result.success:
                    logger.info(
                        "Phase transition rejected",
                        case_id=case_id,
                        from_phase=snapshot.phase.value,
                        to_phase=target_phase.value,
                        errors=result.errors
                    )
                    return result

                if result.approval_required:
                    result.success = False
                    result.approval = await self._request_approval(
                        snapshot, target_phase, actor_id, actor_role, metadata, reason
                    )
                    return result

                now = _utcnow()
                updated, result.events = self._apply_transition(snapshot, target_phase, actor_id, metadata, now)
                await self.repository.commit_changes(updated, snapshot.version, result.events)

        log_business_event(
            "phase_transitioned",
            user_id=actor_id,
            case_id=case_id,
            from_phase=snapshot.phase.value,
            to_phase=target_phase.value,
            actor_role=actor_role.value,
            version=updated.version
        )
        return await self._dispatch_entry_tasks(result, snapshot.case_type, actor_id, now)

    async def approve_transition(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: UserRole,
        reason: Optional[str] = None
    ) -> TransitionResult:
        """
        Approve a pending transition and execute it.

        The transition is re-validated against the current case state with
        the requester's role and metadata. If it no longer holds, the failed
        result is returned and the approval stays pending so it can be
        rejected.

        Raises:
            ApprovalNotFoundError: if the approval does not exist
            ApprovalAlreadyDecidedError: if it was already approved or rejected
            LifecycleValidationError: if ``approver_role`` may not decide on it
            StateConflictError: if another writer changed the case meanwhile
            SideEffectDegradedError: if the transition committed but phase-entry
                tasks failed
        """
        approver_role = coerce_enum(UserRole, approver_role)
        approval = await self.get_approval(approval_id)

        with performance_context("lifecycle_approve_transition", approval_id=approval_id, case_id=approval.case_id):
            async with self.locks.hold(approval.case_id):
                approval = await self._load_decidable(approval_id, approver_id, approver_role)
                snapshot = await self._load_existing(approval.case_id)
                result = self._evaluate_transition(
                    snapshot, approval.target_phase, approval.requested_by_role, approval.metadata
                )
                if snapshot.phase is not approval.from_phase:
                    result.errors.insert(
                        0,
                        f"Case moved from {approval.from_phase.value} to {snapshot.phase.value} "
                        f"after the approval was requested"
                    )
                    result.success = False
                result.approval = approval

                if not result.success:
                    logger.info(
                        "Approved transition is no longer valid",
                        case_id=approval.case_id,
                        approval_id=approval_id,
                        errors=result.errors
                    )
                    return result

                now = _utcnow()
                updated, result.events = self._apply_transition(
                    snapshot, approval.target_phase, approval.requested_by, approval.metadata, now
                )
                await self.repository.commit_changes(updated, snapshot.version, result.events)
                result.approval = approval.decide(ApprovalStatus.APPROVED, approver_id, approver_role, reason, now)
                await self.approval_repository.save_decision(result.approval)

        log_business_event(
            "transition_approved",
            user_id=approver_id,
            case_id=approval.case_id,
            approval_id=approval_id,
            requested_by=approval.requested_by,
            approver_role=approver_role.value,
            reason=reason
        )
        log_business_event(
            "phase_transitioned",
            user_id=approval.requested_by,
            case_id=approval.case_id,
            from_phase=snapshot.phase.value,
            to_phase=approval.target_phase.value,
            actor_role=approval.requested_by_role.value,
            approved_by=approver_id,
            version=updated.version
        )
        return await self._dispatch_entry_tasks(result, snapshot.case_type, approval.requested_by, now)

    async def reject_transition(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: UserRole,
        reason: str
    ) -> TransitionApproval:
        """
        Reject a pending transition and notify the requester.

        Raises:
            ApprovalNotFoundError: if the approval does not exist
            ApprovalAlreadyDecidedError: if it was already approved or rejected
            LifecycleValidationError: if ``approver_role`` may not decide on it
        """
        approver_role = coerce_enum(UserRole, approver_role)
        approval = await self.get_approval(approval_id)

        async with self.locks.hold(approval.case_id):
            approval = await self._load_decidable(approval_id, approver_id, approver_role)
            rejected = approval.decide(ApprovalStatus.REJECTED, approver_id, approver_role, reason)
            await self.approval_repository.save_decision(rejected)

        log_business_event(
            "transition_approval_rejected",
            user_id=approver_id,
            case_id=approval.case_id,
            approval_id=approval_id,
            target_phase=approval.target_phase.value,
            recipient_id=approval.requested_by,
            recipient_role=approval.requested_by_role.value,
            notification=f"Your transition request was rejected: {reason}"
        )
        return rejected

    async def update_case_status(
        self,
        case_id: str,
        new_status: CaseStatus,
        actor_id: str,
        reason: Optional[str] = None
    ) -> LifecycleEvent:
        """
        Change the status of a case within its current phase.

        Raises:
            CaseNotFoundError: if the case has no lifecycle
            LifecycleValidationError: if the status pair is not legal in the phase
            StateConflictError: if another writer changed the case meanwhile
        """
        new_status = coerce_enum(CaseStatus, new_status)

        with performance_context("lifecycle_status_update", case_id=case_id, new_status=new_status.value):
            async with self.locks.hold(case_id):
                snapshot = await self._load_existing(case_id)
                check = phase_rules.check_status_transition(snapshot.phase, snapshot.status, new_status)
                if not check.allowed:
                    raise LifecycleValidationError(
                        f"Cannot change status of case {case_id} from {snapshot.status.value} "
                        f"to {new_status.value} in phase {snapshot.phase.value}",
                        errors=check.errors,
                        error_code=ErrorCode.LIFECYCLE_STATUS_DENIED,
                        case_id=case_id,
                    )

                now = _utcnow()
                updated = snapshot.evolve(
                    status=new_status,
                    updated_at=now,
                    closed_at=now if new_status is CaseStatus.CLOSED else snapshot.closed_at,
                )
                event_metadata = {
                    "from_status": snapshot.status.value,
                    "to_status": new_status.value,
                }
                if reason:
                    event_metadata["reason"] = reason
                event = LifecycleEvent(
                    case_id=case_id,
                    event_type=LifecycleEventType.STATUS_CHANGED,
                    phase=snapshot.phase,
                    status=new_status,
                    actor_id=actor_id,
                    description=reason or f"Status changed from {snapshot.status.value} to {new_status.value}",
                    timestamp=now,
                    metadata=event_metadata,
                    sequence=_sequence(updated.version, 0),
                )
                await self.repository.commit_changes(updated, snapshot.version, [event])

        log_business_event(
            "status_changed",
            user_id=actor_id,
            case_id=case_id,
            phase=snapshot.phase.value,
            old_status=snapshot.status.value,
            new_status=new_status.value,
            reason=reason
        )
        return event

    async def record_milestone(
        self,
        case_id: str,
        actor_id: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> LifecycleEvent:
        """Append a milestone_reached event in the current phase."""
        metadata = validate_metadata(metadata)

        async with self.locks.hold(case_id):
            snapshot = await self._load_existing(case_id)
            now = _utcnow()
            updated = snapshot.evolve(updated_at=now)
            event = LifecycleEvent(
                case_id=case_id,
                event_type=LifecycleEventType.MILESTONE_REACHED,
                phase=snapshot.phase,
                status=snapshot.status,
                actor_id=actor_id,
                description=description,
                timestamp=now,
                metadata=metadata or None,
                sequence=_sequence(updated.version, 0),
            )
            await self.repository.commit_changes(updated, snapshot.version, [event])

        log_business_event(
            "milestone_reached",
            user_id=actor_id,
            case_id=case_id,
            phase=snapshot.phase.value,
            description=description
        )
        return event

    async def retry_phase_entry_tasks(self, case_id: str, actor_id: str) -> TaskCreationReport:
        """
        Create the entry tasks of the current phase that do not exist yet.

        Remediation for a SideEffectDegradedError.

        Raises:
            CaseNotFoundError: if the case has no lifecycle
            SideEffectDegradedError: if some tasks still cannot be created
        """
        async with self.locks.hold(case_id):
            snapshot = await self._load_existing(case_id)
            existing = [
                task.title
                for task in await self.task_service.list_tasks(case_id)
                if task.phase is snapshot.phase
            ]
            report = await self.task_service.create_phase_entry_tasks(
                case_id,
                snapshot.phase,
                actor_id,
                skip_titles=existing,
                case_type=snapshot.case_type
            )

        if not report.succeeded:
            raise SideEffectDegradedError(
                f"Phase entry tasks of case {case_id} still failing",
                case_id=case_id,
                result=report,
                failed_effects=report.failures,
            )
        return report

    # ------------------------------------------------------------------
    # Queries (no lock)
    # ------------------------------------------------------------------

    async def get_case_state(self, case_id: str) -> CaseSnapshot:
        return await self._load_existing(case_id)

    async def get_case_progress(self, case_id: str, now: Optional[datetime] = None) -> CaseProgress:
        """
        Progress and scheduling projection of a case.

        Percentage is the phase position over the last position; milestones
        are the soonest-due open tasks; estimated completion adds the
        durations of the phases after the current one to ``now``.
        """
        now = now or _utcnow()
        snapshot = await self._load_existing(case_id)
        phases = CasePhase.ordered()
        position = snapshot.phase.position

        open_tasks = sorted(
            await self.task_service.list_open_tasks(case_id),
            key=lambda task: task.due_date
        )
        limit = self.settings.lifecycle.max_upcoming_milestones

        if snapshot.is_terminal:
            estimated_completion = snapshot.closed_at or snapshot.updated_at
        else:
            remaining_days = sum(
                phase_rules.estimated_duration_days(phase) for phase in phases[position + 1:]
            )
            estimated_completion = now + timedelta(days=remaining_days)

        return CaseProgress(
            case_id=case_id,
            current_phase=snapshot.phase,
            current_status=snapshot.status,
            progress_percentage=round(position / (len(phases) - 1) * 100),
            completed_phases=phases[:position],
            upcoming_milestones=[task.title for task in open_tasks[:limit]],
            overdue_tasks=[task.title for task in open_tasks if task.is_overdue(now)],
            estimated_completion=estimated_completion,
            phase_completion_percentage=phase_rules.phase_completion_percentage(
                snapshot.phase, snapshot.case_type, snapshot.metadata
            ),
        )

    def get_phase_requirements(self, phase: CasePhase, case_type: CaseType) -> PhaseRequirements:
        return phase_rules.get_phase_requirements(phase, case_type)

    async def get_lifecycle_events(self, case_id: str) -> List[LifecycleEvent]:
        await self._load_existing(case_id)
        return await self.repository.list_events(case_id)

    async def get_available_transitions(
        self,
        case_id: str,
        actor_role: UserRole
    ) -> List[TransitionResult]:
        """
        Evaluate every declared transition from the current phase that
        ``actor_role`` may perform, without committing anything.
        """
        actor_role = coerce_enum(UserRole, actor_role)
        snapshot = await self._load_existing(case_id)
        return [
            self._evaluate_transition(snapshot, target, actor_role, {})
            for target in self.state_machine.available_transitions(snapshot, actor_role)
        ]

    async def get_approval(self, approval_id: str) -> TransitionApproval:
        approval = await self.approval_repository.load_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval

    async def list_pending_approvals(
        self,
        case_id: Optional[str] = None,
        approver_role: Optional[UserRole] = None
    ) -> List[TransitionApproval]:
        """Pending approvals, newest first; only those ``approver_role`` may decide when given."""
        approvals = await self.approval_repository.list_approvals(case_id=case_id, status=ApprovalStatus.PENDING)
        if approver_role is not None:
            approver_role = coerce_enum(UserRole, approver_role)
            approvals = [approval for approval in approvals if approval.can_be_decided_by(approver_role)]
        return approvals

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request_approval(
        self,
        snapshot: CaseSnapshot,
        target_phase: CasePhase,
        actor_id: str,
        actor_role: UserRole,
        metadata: Mapping[str, Any],
        reason: Optional[str]
    ) -> TransitionApproval:
        pending = await self.approval_repository.list_approvals(
            case_id=snapshot.case_id, status=ApprovalStatus.PENDING
        )
        for existing in pending:
            if existing.from_phase is snapshot.phase and existing.target_phase is target_phase:
                logger.info(
                    "Transition already awaiting approval",
                    case_id=snapshot.case_id,
                    approval_id=existing.approval_id
                )
                return existing

        approver_roles = sorted(
            self.state_machine.approval_roles(snapshot.case_type, target_phase),
            key=lambda role: role.value
        )
        approval = TransitionApproval(
            case_id=snapshot.case_id,
            from_phase=snapshot.phase,
            target_phase=target_phase,
            requested_by=actor_id,
            requested_by_role=actor_role,
            approver_roles=approver_roles,
            metadata=dict(metadata),
            reason=reason,
        )
        await self.approval_repository.create_approval(approval)

        log_business_event(
            "transition_approval_requested",
            user_id=actor_id,
            case_id=snapshot.case_id,
            approval_id=approval.approval_id,
            from_phase=snapshot.phase.value,
            to_phase=target_phase.value,
            recipient_roles=[role.value for role in approver_roles],
            notification=f"Transition approval required for case {snapshot.case_id}"
        )
        return approval

    async def _load_decidable(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: UserRole
    ) -> TransitionApproval:
        approval = await self.get_approval(approval_id)
        if not approval.is_pending:
            raise ApprovalAlreadyDecidedError(approval_id, approval.status.value)
        if not approval.can_be_decided_by(approver_role):
            log_security_event(
                "approval_decision_denied",
                user_id=approver_id,
                resource_type="transition_approval",
                resource_id=approval_id,
                action="decide",
                success=False,
                actor_role=approver_role.value
            )
            allowed = ", ".join(role.value for role in approval.approver_roles)
            raise LifecycleValidationError(
                f"Role {approver_role.value} cannot decide on approval {approval_id}",
                errors=[f"Role {approver_role.value} cannot decide on this transition (allowed: {allowed})"],
                error_code=ErrorCode.LIFECYCLE_APPROVAL_DENIED,
                case_id=approval.case_id,
            )
        return approval

    async def _dispatch_entry_tasks(
        self,
        result: TransitionResult,
        case_type: CaseType,
        actor_id: str,
        now: datetime
    ) -> TransitionResult:
        report = await self.task_service.create_phase_entry_tasks(
            result.case_id, result.to_phase, actor_id, now, case_type=case_type
        )
        result.tasks_created = report.created
        if not report.succeeded:
            raise SideEffectDegradedError(
                f"Case {result.case_id} entered {result.to_phase.value} but phase entry tasks failed",
                case_id=result.case_id,
                result=result,
                failed_effects=report.failures,
            )
        return result

    async def _load_existing(self, case_id: str) -> CaseSnapshot:
        snapshot = await self.repository.load_case(case_id)
        if snapshot is None:
            raise CaseNotFoundError(case_id)
        return snapshot

    def _evaluate_transition(
        self,
        snapshot: CaseSnapshot,
        target_phase: CasePhase,
        actor_role: UserRole,
        metadata: Mapping[str, Any]
    ) -> TransitionResult:
        """Run all validators against ``snapshot`` and collect their findings."""
        result = TransitionResult(
            success=False,
            case_id=snapshot.case_id,
            from_phase=snapshot.phase,
            to_phase=target_phase,
        )
        merged = snapshot.merged_metadata(metadata)
        current_phase = snapshot.phase

        check = self.state_machine.can_transition(snapshot, target_phase, actor_role, metadata)
        result.errors.extend(check.errors)
        if check.role_denied:
            log_security_event(
                "transition_role_denied",
                resource_type="case",
                resource_id=snapshot.case_id,
                action=f"transition:{current_phase.value}->{target_phase.value}",
                success=False,
                actor_role=actor_role.value
            )

        early_termination = target_phase is CasePhase.CLOSURE and current_phase is not CasePhase.RESOLUTION
        if target_phase is not current_phase and not early_termination:
            completeness = phase_rules.check_phase_completeness(current_phase, snapshot.case_type, merged)
            result.errors.extend(completeness.errors)
            result.missing_fields.extend(completeness.missing_fields)
            result.warnings.extend(phase_rules.exit_warnings(current_phase, snapshot.case_type, merged))
            result.warnings.extend(phase_rules.entry_warnings(target_phase, snapshot.case_type, merged))

        outcome = self.case_type_validator.validate_case_type_transition(
            snapshot.case_type,
            current_phase,
            target_phase,
            merged,
            phase_started_at=snapshot.phase_entered_at,
        )
        result.errors.extend(outcome.errors)
        result.missing_fields.extend(
            name for name in outcome.missing_fields if name not in result.missing_fields
        )
        result.warnings.extend(outcome.warnings)
        result.recommendations.extend(outcome.recommendations)

        result.success = not result.errors
        result.approval_required = self.state_machine.requires_approval(
            snapshot.case_type, target_phase, actor_role
        )
        return result

    @staticmethod
    def _apply_transition(
        snapshot: CaseSnapshot,
        target_phase: CasePhase,
        actor_id: str,
        metadata: Mapping[str, Any],
        now: datetime
    ):
        """Next snapshot and the events recording the move, in commit order."""
        closing = target_phase is CasePhase.CLOSURE
        new_status = CaseStatus.CLOSED if closing else snapshot.status
        updated = snapshot.evolve(
            phase=target_phase,
            status=new_status,
            metadata=snapshot.merged_metadata(metadata),
            updated_at=now,
            phase_entered_at=now,
            closed_at=now if closing else snapshot.closed_at,
        )

        events = [
            LifecycleEvent(
                case_id=snapshot.case_id,
                event_type=LifecycleEventType.PHASE_COMPLETED,
                phase=snapshot.phase,
                status=snapshot.status,
                actor_id=actor_id,
                description=f"Completed {snapshot.phase.value} phase",
                timestamp=now,
                sequence=_sequence(updated.version, 0),
            ),
            LifecycleEvent(
                case_id=snapshot.case_id,
                event_type=LifecycleEventType.PHASE_ENTERED,
                phase=target_phase,
                status=new_status,
                actor_id=actor_id,
                description=f"Entered {target_phase.value} phase",
                timestamp=now,
                metadata=dict(metadata) or None,
                sequence=_sequence(updated.version, 1),
            ),
        ]
        if new_status is not snapshot.status:
            events.append(
                LifecycleEvent(
                    case_id=snapshot.case_id,
                    event_type=LifecycleEventType.STATUS_CHANGED,
                    phase=target_phase,
                    status=new_status,
                    actor_id=actor_id,
                    description=f"Status changed from {snapshot.status.value} to {new_status.value}",
                    timestamp=now,
                    metadata={"from_status": snapshot.status.value, "to_status": new_status.value},
                    sequence=_sequence(updated.version, 2),
                )
            )
        return updated, events


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sequence(version: int, position: int) -> int:
    return version * 10 + position


def create_lifecycle_service(settings: Optional[Settings] = None) -> CaseLifecycleService:
    """Wire a CaseLifecycleService with the configured repository backend."""
    settings = settings or get_settings()

    if settings.lifecycle.repository_backend == "mongodb":
        from backend.app.repositories.mongodb.approval_repository import MongoApprovalRepository
        from backend.app.repositories.mongodb.lifecycle_repository import MongoCaseLifecycleRepository
        from backend.app.repositories.mongodb.task_repository import MongoTaskRepository

        repository = MongoCaseLifecycleRepository(use_transactions=settings.database.use_transactions)
        task_repository = MongoTaskRepository()
        approval_repository = MongoApprovalRepository()
    else:
        from backend.app.repositories.memory.lifecycle_repository import (
            InMemoryCaseLifecycleRepository,
            InMemoryTaskRepository,
        )

        repository = InMemoryCaseLifecycleRepository()
        task_repository = InMemoryTaskRepository()
        approval_repository = InMemoryApprovalRepository()

    logger.info("Lifecycle service created", repository_backend=settings.lifecycle.repository_backend)
    return CaseLifecycleService(
        repository=repository,
        task_service=TaskService(task_repository, settings.lifecycle.default_task_assignee),
        settings=settings,
        approval_repository=approval_repository,
    )
