"""
Case lifecycle state machine.

A pure transition-legality function over an immutable case snapshot.
Transitions form an explicit allow-list: each declared (from, to) pair names
the roles allowed to perform it and the conditions the case metadata must
satisfy. Case types can attach extra conditions to a declared transition but
never declare new ones.

Expected denials are returned as reasons; only unrecognized enum values
raise (ProgrammingError).
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from backend.app.models.domain.conditions import Condition, FieldExists, IsTrue
from backend.app.models.domain.lifecycle import (
    CasePhase,
    CaseSnapshot,
    CaseType,
    UserRole,
    coerce_enum,
)
from backend.app.utils.logging import get_logger

logger = get_logger(__name__)


LEGAL_ROLES: FrozenSet[UserRole] = frozenset({UserRole.ATTORNEY, UserRole.ADMIN})


@dataclass(frozen=True)
class TransitionRule:
    from_phase: CasePhase
    to_phase: CasePhase
    allowed_roles: FrozenSet[UserRole]
    conditions: Tuple[Condition, ...] = ()
    description: str = ""

    @property
    def key(self) -> Tuple[CasePhase, CasePhase]:
        return (self.from_phase, self.to_phase)

    def extended(self, extra: Tuple[Condition, ...]) -> "TransitionRule":
        return TransitionRule(
            from_phase=self.from_phase,
            to_phase=self.to_phase,
            allowed_roles=self.allowed_roles,
            conditions=self.conditions + tuple(c for c in extra if c not in self.conditions),
            description=self.description,
        )


@dataclass
class TransitionCheck:
    success: bool
    errors: List[str] = field(default_factory=list)
    rule: Optional[TransitionRule] = None
    role_denied: bool = False


def _rule(
    from_phase: CasePhase,
    to_phase: CasePhase,
    *conditions: Condition,
    roles: FrozenSet[UserRole] = LEGAL_ROLES,
    description: str = ""
) -> TransitionRule:
    return TransitionRule(from_phase, to_phase, roles, tuple(conditions), description)


BASE_TRANSITIONS: Tuple[TransitionRule, ...] = (
    _rule(
        CasePhase.INTAKE, CasePhase.PREPARATION,
        IsTrue("riskAssessmentCompleted"),
        description="Complete intake and risk assessment",
    ),
    _rule(
        CasePhase.INTAKE, CasePhase.CLOSURE,
        IsTrue("caseRejected"),
        description="Reject case during intake",
    ),
    _rule(
        CasePhase.PREPARATION, CasePhase.PROCEEDINGS,
        IsTrue("preparationCompleted"),
        description="Begin formal proceedings",
    ),
    _rule(
        CasePhase.PREPARATION, CasePhase.CLOSURE,
        IsTrue("caseSettled"),
        description="Settle case before proceedings",
    ),
    _rule(
        CasePhase.PROCEEDINGS, CasePhase.RESOLUTION,
        IsTrue("proceedingsCompleted"),
        description="Move to resolution after proceedings",
    ),
    _rule(
        CasePhase.PROCEEDINGS, CasePhase.CLOSURE,
        IsTrue("caseDismissed"),
        description="Close dismissed case",
    ),
    _rule(
        CasePhase.RESOLUTION, CasePhase.CLOSURE,
        IsTrue("resolutionCompleted"),
        roles=LEGAL_ROLES | {UserRole.ARCHIVIST},
        description="Close and archive resolved case",
    ),
)


CASE_TYPE_OVERLAYS: Dict[CaseType, Dict[Tuple[CasePhase, CasePhase], Tuple[Condition, ...]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        (CasePhase.INTAKE, CasePhase.PREPARATION): (
            IsTrue("bailHearingScheduled"),
            IsTrue("evidenceSecured"),
        ),
    },
    CaseType.DIVORCE_FAMILY: {
        (CasePhase.PREPARATION, CasePhase.PROCEEDINGS): (
            IsTrue("mediationAttempted"),
            FieldExists("custodyAgreement"),
        ),
    },
    CaseType.MEDICAL_MALPRACTICE: {
        (CasePhase.INTAKE, CasePhase.PREPARATION): (
            IsTrue("medicalRecordsReviewed"),
            IsTrue("expertConsultationCompleted"),
        ),
    },
    CaseType.CONTRACT_DISPUTE: {
        (CasePhase.PREPARATION, CasePhase.PROCEEDINGS): (
            IsTrue("contractAnalyzed"),
            IsTrue("breachDocumented"),
        ),
    },
    CaseType.LABOR_DISPUTE: {
        (CasePhase.PREPARATION, CasePhase.PROCEEDINGS): (
            IsTrue("laborBoardNotified"),
            IsTrue("employmentHistoryVerified"),
        ),
    },
    CaseType.INHERITANCE_DISPUTE: {
        (CasePhase.INTAKE, CasePhase.PREPARATION): (
            FieldExists("willLocated"),
            IsTrue("heirsIdentified"),
        ),
    },
    CaseType.ADMINISTRATIVE_CASE: {
        (CasePhase.PROCEEDINGS, CasePhase.RESOLUTION): (
            IsTrue("administrativeHearingCompleted"),
            IsTrue("evidenceSubmitted"),
        ),
    },
}


ADMIN_ONLY: FrozenSet[UserRole] = frozenset({UserRole.ADMIN})

# target phases whose entry needs one of the listed roles or their approval
APPROVAL_RULES: Dict[CaseType, Dict[CasePhase, FrozenSet[UserRole]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        CasePhase.PROCEEDINGS: ADMIN_ONLY,
        CasePhase.RESOLUTION: ADMIN_ONLY,
    },
    CaseType.MEDICAL_MALPRACTICE: {
        CasePhase.PREPARATION: ADMIN_ONLY,
        CasePhase.PROCEEDINGS: ADMIN_ONLY,
    },
    CaseType.DIVORCE_FAMILY: {
        CasePhase.PROCEEDINGS: ADMIN_ONLY,
    },
}


class CaseStateMachine:
    """
    Allow-list state machine over case phases.

    Transition tables are resolved once per case type.
    """

    def __init__(
        self,
        base_transitions: Tuple[TransitionRule, ...] = BASE_TRANSITIONS,
        overlays: Optional[Dict[CaseType, Dict[Tuple[CasePhase, CasePhase], Tuple[Condition, ...]]]] = None,
        approval_rules: Optional[Dict[CaseType, Dict[CasePhase, FrozenSet[UserRole]]]] = None
    ):
        overlays = CASE_TYPE_OVERLAYS if overlays is None else overlays
        self._approval_rules = APPROVAL_RULES if approval_rules is None else approval_rules
        self._tables: Dict[CaseType, Dict[Tuple[CasePhase, CasePhase], TransitionRule]] = {}
        for case_type in CaseType:
            table = {rule.key: rule for rule in base_transitions}
            for key, extra in overlays.get(case_type, {}).items():
                # overlays only tighten declared transitions
                if key in table:
                    table[key] = table[key].extended(extra)
            self._tables[case_type] = table

    def transitions_for(self, case_type: CaseType) -> List[TransitionRule]:
        """Declared transitions of ``case_type`` in lifecycle order."""
        table = self._tables[coerce_enum(CaseType, case_type)]
        return sorted(table.values(), key=lambda r: (r.from_phase.position, r.to_phase.position))

    def get_transition(
        self,
        case_type: CaseType,
        from_phase: CasePhase,
        to_phase: CasePhase
    ) -> Optional[TransitionRule]:
        return self._tables[coerce_enum(CaseType, case_type)].get((from_phase, to_phase))

    def approval_roles(self, case_type: CaseType, target_phase: CasePhase) -> FrozenSet[UserRole]:
        """Roles that may enter ``target_phase`` without approval; empty when unrestricted."""
        rules = self._approval_rules.get(coerce_enum(CaseType, case_type), {})
        return rules.get(coerce_enum(CasePhase, target_phase), frozenset())

    def requires_approval(self, case_type: CaseType, target_phase: CasePhase, actor_role: UserRole) -> bool:
        roles = self.approval_roles(case_type, target_phase)
        return bool(roles) and coerce_enum(UserRole, actor_role) not in roles

    def can_transition(
        self,
        current_state: CaseSnapshot,
        target_phase: CasePhase,
        actor_role: UserRole,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> TransitionCheck:
        """
        Decide whether ``actor_role`` may move the case to ``target_phase``.

        Checks order, then the declared transition, then the role, then the
        transition conditions against the snapshot metadata overlaid with
        ``metadata``. Every failing check adds a reason; nothing short-circuits
        except that role and conditions need a declared transition to check.

        Raises:
            ProgrammingError: for unrecognized phase, role or case type values
        """
        target_phase = coerce_enum(CasePhase, target_phase)
        actor_role = coerce_enum(UserRole, actor_role)
        current_phase = current_state.phase
        case_type = current_state.case_type
        check = TransitionCheck(success=False)

        if target_phase is current_phase:
            check.errors.append(f"Case is already in phase {current_phase.value}")
        elif not target_phase.is_forward_of(current_phase) and target_phase is not CasePhase.CLOSURE:
            check.errors.append(
                f"Cannot transition from {current_phase.value} to {target_phase.value}. "
                f"Phases must progress forward."
            )

        rule = self.get_transition(case_type, current_phase, target_phase)
        check.rule = rule
        if rule is None:
            check.errors.append(
                f"No transition rule from {current_phase.value} to {target_phase.value}"
            )
        else:
            if actor_role not in rule.allowed_roles:
                check.role_denied = True
                allowed = ", ".join(sorted(role.value for role in rule.allowed_roles))
                check.errors.append(
                    f"Role {actor_role.value} is not allowed to transition from "
                    f"{current_phase.value} to {target_phase.value} (allowed: {allowed})"
                )

            merged = current_state.merged_metadata(metadata)
            for condition in rule.conditions:
                if not condition.evaluate(case_type, merged):
                    check.errors.append(f"Transition condition not met: {condition.describe()}")

        check.success = not check.errors
        if not check.success:
            logger.debug(
                "Phase transition denied",
                case_id=current_state.case_id,
                from_phase=current_phase.value,
                to_phase=target_phase.value,
                actor_role=actor_role.value,
                reasons=len(check.errors)
            )
        return check

    def available_transitions(self, current_state: CaseSnapshot, actor_role: UserRole) -> List[CasePhase]:
        """Targets declared from the current phase that ``actor_role`` may perform."""
        actor_role = coerce_enum(UserRole, actor_role)
        return [
            rule.to_phase
            for rule in self.transitions_for(current_state.case_type)
            if rule.from_phase is current_state.phase and actor_role in rule.allowed_roles
        ]


@lru_cache(maxsize=1)
def get_state_machine() -> CaseStateMachine:
    """Shared machine over the default transition tables."""
    return CaseStateMachine()


def can_transition(
    current_state: CaseSnapshot,
    target_phase: CasePhase,
    actor_role: UserRole,
    metadata: Optional[Mapping[str, Any]] = None
) -> TransitionCheck:
    """Check a transition against the default transition tables."""
    return get_state_machine().can_transition(current_state, target_phase, actor_role, metadata)
