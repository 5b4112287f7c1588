"""
Domain model for the legal case lifecycle.

This module defines the core entities the lifecycle engine reasons about:
- Ordered case phases, phase-scoped statuses, case types and actor roles
- The immutable case snapshot read by the validators
- Append-only lifecycle events forming the audit trail
- Follow-up tasks created on phase entry
- Approval requests for transitions a role may not perform alone
- Derived requirement and progress projections
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from backend.app.core.exceptions import (
    ErrorCode,
    LifecycleValidationError,
    raise_unknown_value,
)


E = TypeVar("E", bound=Enum)

METADATA_KEY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,99}$")
MAX_METADATA_DEPTH = 4


class CasePhase(str, Enum):
    """Ordered lifecycle phases. Declaration order is the lifecycle order."""

    INTAKE = "intake"
    PREPARATION = "preparation"
    PROCEEDINGS = "proceedings"
    RESOLUTION = "resolution"
    CLOSURE = "closure"

    @classmethod
    def ordered(cls) -> List["CasePhase"]:
        return list(cls)

    @property
    def position(self) -> int:
        """Position of the phase in the lifecycle order."""
        return CasePhase.ordered().index(self)

    @property
    def is_terminal(self) -> bool:
        return self is CasePhase.CLOSURE

    def next_phase(self) -> Optional["CasePhase"]:
        """Immediate successor, or None for the terminal phase."""
        phases = CasePhase.ordered()
        position = phases.index(self)
        return phases[position + 1] if position + 1 < len(phases) else None

    def is_forward_of(self, other: "CasePhase") -> bool:
        return self.position > other.position

    @property
    def label(self) -> str:
        return self.value.capitalize()


class CaseStatus(str, Enum):
    """Operational status within a phase. Legality is phase-scoped."""

    INTAKE = "intake"
    ACTIVE = "active"
    PENDING = "pending"
    COMPLETED = "completed"
    CLOSED = "closed"


class CaseType(str, Enum):
    """Legal category of a case. Selects conditional rules."""

    CRIMINAL_DEFENSE = "criminal_defense"
    MEDICAL_MALPRACTICE = "medical_malpractice"
    DIVORCE_FAMILY = "divorce_family"
    CONTRACT_DISPUTE = "contract_dispute"
    ADMINISTRATIVE_CASE = "administrative_case"
    INHERITANCE_DISPUTE = "inheritance_dispute"
    LABOR_DISPUTE = "labor_dispute"
    OTHER = "other"


class UserRole(str, Enum):
    """Actor roles supplied by the external auth system."""

    ADMIN = "admin"
    ATTORNEY = "attorney"
    PARALEGAL = "paralegal"
    ASSISTANT = "assistant"
    ARCHIVIST = "archivist"
    CLIENT = "client"


class LifecycleEventType(str, Enum):
    PHASE_ENTERED = "phase_entered"
    PHASE_COMPLETED = "phase_completed"
    STATUS_CHANGED = "status_changed"
    MILESTONE_REACHED = "milestone_reached"


class TaskPriority(str, Enum):
    """Task priority levels for workflow management."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


def coerce_enum(enum_type: Type[E], value: Any) -> E:
    """
    Convert a raw value into a member of ``enum_type``.

    Values outside the closed set indicate broken integration, so they raise
    ProgrammingError rather than a validation failure.
    """
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise_unknown_value(value, enum_type.__name__)


def is_present(metadata: Mapping[str, Any], field_name: str) -> bool:
    """A field counts as present unless it is absent, None or an empty string."""
    value = metadata.get(field_name)
    return value is not None and value != ""


def _normalize_metadata_value(key: str, value: Any, depth: int, errors: List[str]) -> Any:
    if depth > MAX_METADATA_DEPTH:
        errors.append(f"Metadata field '{key}' is nested too deeply")
        return None
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_normalize_metadata_value(key, item, depth + 1, errors) for item in value]
    if isinstance(value, Mapping):
        nested = {}
        for nested_key, nested_value in value.items():
            if not isinstance(nested_key, str):
                errors.append(f"Metadata field '{key}' has a non-string key: {nested_key!r}")
                continue
            nested[nested_key] = _normalize_metadata_value(key, nested_value, depth + 1, errors)
        return nested
    errors.append(f"Metadata field '{key}' has unsupported type {type(value).__name__}")
    return None


def validate_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate and normalize a metadata map at the service boundary.

    Keys must be identifier-like strings; values must be JSON-compatible.
    Dates are normalized to ISO-8601 strings.

    Raises:
        LifecycleValidationError: listing every offending key
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise LifecycleValidationError(
            "Metadata must be a mapping of field names to values",
            error_code=ErrorCode.LIFECYCLE_METADATA_INVALID,
        )

    errors: List[str] = []
    normalized: Dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not METADATA_KEY_PATTERN.match(key):
            errors.append(f"Invalid metadata field name: {key!r}")
            continue
        normalized[key] = _normalize_metadata_value(key, value, 0, errors)

    if errors:
        raise LifecycleValidationError(
            "Invalid case metadata",
            errors=errors,
            error_code=ErrorCode.LIFECYCLE_METADATA_INVALID,
        )
    return normalized


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class CaseSnapshot:
    """
    Immutable view of a case's lifecycle state.

    Validators receive a snapshot per operation; only the orchestrator
    produces new snapshots. ``version`` increments with every write and
    guards against lost updates.
    """

    case_id: str
    case_type: CaseType
    phase: CasePhase
    status: CaseStatus
    metadata: Mapping[str, Any] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    phase_entered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "case_type", coerce_enum(CaseType, self.case_type))
        object.__setattr__(self, "phase", coerce_enum(CasePhase, self.phase))
        object.__setattr__(self, "status", coerce_enum(CaseStatus, self.status))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def create_new(
        cls,
        case_id: str,
        case_type: CaseType,
        metadata: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> "CaseSnapshot":
        """Initial lifecycle state: (intake, intake), version 1."""
        now = now or datetime.now(timezone.utc)
        return cls(
            case_id=case_id,
            case_type=case_type,
            phase=CasePhase.INTAKE,
            status=CaseStatus.INTAKE,
            metadata=metadata or {},
            version=1,
            created_at=now,
            updated_at=now,
            phase_entered_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase is CasePhase.CLOSURE and self.status is CaseStatus.CLOSED

    def merged_metadata(self, extra: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Stored metadata overlaid with ``extra``. Keys are never removed."""
        merged = dict(self.metadata)
        if extra:
            merged.update(extra)
        return merged

    def evolve(self, **changes: Any) -> "CaseSnapshot":
        """Next snapshot with ``changes`` applied and the version bumped."""
        changes.setdefault("version", self.version + 1)
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "case_type": self.case_type.value,
            "phase": self.phase.value,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "phase_entered_at": self.phase_entered_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaseSnapshot":
        return cls(
            case_id=data["case_id"],
            case_type=data["case_type"],
            phase=data["phase"],
            status=data["status"],
            metadata=data.get("metadata") or {},
            version=int(data.get("version", 0)),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            phase_entered_at=_parse_datetime(data.get("phase_entered_at") or data["updated_at"]),
            closed_at=_parse_datetime(data.get("closed_at")),
        )

    def __str__(self) -> str:
        return (
            f"CaseSnapshot(id={self.case_id}, type={self.case_type.value}, "
            f"phase={self.phase.value}, status={self.status.value}, v{self.version})"
        )


@dataclass(frozen=True)
class LifecycleEvent:
    """
    Immutable audit record of a lifecycle change.

    Events of one case are ordered by ``(timestamp, sequence)``; ``sequence``
    is the case version that produced the event followed by its position
    within that commit.
    """

    case_id: str
    event_type: LifecycleEventType
    phase: CasePhase
    actor_id: str
    description: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: Optional[CaseStatus] = None
    metadata: Optional[Mapping[str, Any]] = None
    event_id: str = field(default_factory=lambda: f"EVT_{uuid.uuid4().hex[:16].upper()}")
    sequence: int = 0

    def __post_init__(self):
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def sort_key(self):
        return (self.timestamp, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "case_id": self.case_id,
            "event_type": self.event_type.value,
            "phase": self.phase.value,
            "status": self.status.value if self.status else None,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "description": self.description,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleEvent":
        return cls(
            event_id=data["event_id"],
            case_id=data["case_id"],
            event_type=LifecycleEventType(data["event_type"]),
            phase=CasePhase(data["phase"]),
            status=CaseStatus(data["status"]) if data.get("status") else None,
            timestamp=_parse_datetime(data["timestamp"]),
            actor_id=data["actor_id"],
            description=data["description"],
            metadata=data.get("metadata"),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass(frozen=True)
class TaskRequest:
    """Input of the task-creation collaborator."""

    case_id: str
    title: str
    description: str
    assigned_to: str
    assigned_by: str
    due_date: datetime
    priority: TaskPriority
    phase: Optional[CasePhase] = None


@dataclass
class LifecycleTask:
    """Follow-up task attached to a case."""

    task_id: str
    case_id: str
    title: str
    description: str
    assigned_to: str
    assigned_by: str
    due_date: datetime
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    phase: Optional[CasePhase] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_request(cls, request: TaskRequest, task_id: Optional[str] = None) -> "LifecycleTask":
        return cls(
            task_id=task_id or f"TASK_{uuid.uuid4().hex[:12].upper()}",
            case_id=request.case_id,
            title=request.title,
            description=request.description,
            assigned_to=request.assigned_to,
            assigned_by=request.assigned_by,
            due_date=request.due_date,
            priority=request.priority,
            phase=request.phase,
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and self.due_date < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "case_id": self.case_id,
            "title": self.title,
            "description": self.description,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "due_date": self.due_date.isoformat(),
            "priority": self.priority.value,
            "status": self.status.value,
            "phase": self.phase.value if self.phase else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleTask":
        return cls(
            task_id=data["task_id"],
            case_id=data["case_id"],
            title=data["title"],
            description=data.get("description", ""),
            assigned_to=data["assigned_to"],
            assigned_by=data["assigned_by"],
            due_date=_parse_datetime(data["due_date"]),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            phase=CasePhase(data["phase"]) if data.get("phase") else None,
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
        )


@dataclass
class TransitionApproval:
    """
    A valid transition held back until an approver decides on it.

    The requester's role and metadata are kept so an approval executes
    exactly the transition that was requested.
    """

    case_id: str
    from_phase: CasePhase
    target_phase: CasePhase
    requested_by: str
    requested_by_role: UserRole
    approver_roles: List[UserRole]
    metadata: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: Optional[str] = None
    decided_by_role: Optional[UserRole] = None
    decision_reason: Optional[str] = None
    approval_id: str = field(default_factory=lambda: f"APR_{uuid.uuid4().hex[:12].upper()}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decided_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING

    def can_be_decided_by(self, role: UserRole) -> bool:
        return role in self.approver_roles

    def decide(
        self,
        status: ApprovalStatus,
        decided_by: str,
        decided_by_role: UserRole,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> "TransitionApproval":
        """Copy of this request carrying the decision."""
        return replace(
            self,
            status=status,
            decided_by=decided_by,
            decided_by_role=decided_by_role,
            decision_reason=reason,
            decided_at=now or datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "case_id": self.case_id,
            "from_phase": self.from_phase.value,
            "target_phase": self.target_phase.value,
            "requested_by": self.requested_by,
            "requested_by_role": self.requested_by_role.value,
            "approver_roles": [role.value for role in self.approver_roles],
            "metadata": dict(self.metadata),
            "reason": self.reason,
            "status": self.status.value,
            "decided_by": self.decided_by,
            "decided_by_role": self.decided_by_role.value if self.decided_by_role else None,
            "decision_reason": self.decision_reason,
            "created_at": self.created_at.isoformat(),
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionApproval":
        return cls(
            approval_id=data["approval_id"],
            case_id=data["case_id"],
            from_phase=CasePhase(data["from_phase"]),
            target_phase=CasePhase(data["target_phase"]),
            requested_by=data["requested_by"],
            requested_by_role=UserRole(data["requested_by_role"]),
            approver_roles=[UserRole(role) for role in data.get("approver_roles", [])],
            metadata=data.get("metadata") or {},
            reason=data.get("reason"),
            status=ApprovalStatus(data.get("status", ApprovalStatus.PENDING.value)),
            decided_by=data.get("decided_by"),
            decided_by_role=UserRole(data["decided_by_role"]) if data.get("decided_by_role") else None,
            decision_reason=data.get("decision_reason"),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
            decided_at=_parse_datetime(data.get("decided_at")),
        )


@dataclass(frozen=True)
class PhaseRequirements:
    """Derived, never persisted: what a phase involves for a case type."""

    phase: CasePhase
    requirements: List[str]
    estimated_duration_days: int
    critical_tasks: List[str]
    deliverables: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "requirements": list(self.requirements),
            "estimated_duration_days": self.estimated_duration_days,
            "critical_tasks": list(self.critical_tasks),
            "deliverables": list(self.deliverables),
        }


@dataclass
class CaseProgress:
    """Progress and scheduling projection of a case."""

    case_id: str
    current_phase: CasePhase
    current_status: CaseStatus
    progress_percentage: int
    completed_phases: List[CasePhase]
    upcoming_milestones: List[str]
    overdue_tasks: List[str]
    estimated_completion: Optional[datetime]
    phase_completion_percentage: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "current_phase": self.current_phase.value,
            "current_status": self.current_status.value,
            "progress_percentage": self.progress_percentage,
            "completed_phases": [phase.value for phase in self.completed_phases],
            "upcoming_milestones": list(self.upcoming_milestones),
            "overdue_tasks": list(self.overdue_tasks),
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            "phase_completion_percentage": self.phase_completion_percentage,
        }


@dataclass
class TransitionResult:
    """
    Outcome of a phase transition request.

    A failed result carries every collected reason; nothing was persisted.
    A valid transition the actor may not perform alone is not committed
    either: ``approval`` then holds the pending request.
    """

    success: bool
    case_id: str
    from_phase: CasePhase
    to_phase: CasePhase
    events: List[LifecycleEvent] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)
    tasks_created: List[LifecycleTask] = field(default_factory=list)
    approval_required: bool = False
    approval: Optional[TransitionApproval] = None

    @property
    def awaiting_approval(self) -> bool:
        """Valid, but held back until an approver decides."""
        return not self.errors and self.approval is not None and self.approval.is_pending

    def raise_for_errors(self) -> "TransitionResult":
        """Raise LifecycleValidationError for a failed result, else return self."""
        if not self.success and not self.awaiting_approval:
            raise LifecycleValidationError(
                f"Cannot transition case {self.case_id} from {self.from_phase.value} "
                f"to {self.to_phase.value}",
                errors=self.errors,
                error_code=ErrorCode.LIFECYCLE_TRANSITION_DENIED,
                case_id=self.case_id,
                missing_fields=self.missing_fields,
                warnings=self.warnings,
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "case_id": self.case_id,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "events": [event.to_dict() for event in self.events],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
            "missing_fields": list(self.missing_fields),
            "tasks_created": [task.to_dict() for task in self.tasks_created],
            "approval_required": self.approval_required,
            "approval": self.approval.to_dict() if self.approval else None,
        }
