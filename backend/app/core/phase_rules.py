"""
Phase Rule Table for the case lifecycle.

A static declarative map from each phase to:
- the metadata fields that must be present to complete the phase
- case-type conditional field requirements
- the status transitions that are legal while the case is in the phase

It also holds the phase catalogue used by projections (estimated duration,
critical tasks, deliverables, case-type requirement additions) and the
advisory checks that produce non-blocking warnings.

Everything here is pure: no I/O, no mutation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from backend.app.models.domain.conditions import (
    CaseTypeEquals,
    Condition,
    IsTrue,
    Not,
)
from backend.app.models.domain.lifecycle import (
    CasePhase,
    CaseStatus,
    CaseType,
    PhaseRequirements,
    coerce_enum,
    is_present,
)


@dataclass(frozen=True)
class ConditionalRule:
    """When ``condition`` holds, ``required_fields`` must be present."""

    condition: Condition
    required_fields: Tuple[str, ...]
    error_message: str

    def applies(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return self.condition.evaluate(case_type, metadata)

    def missing_fields(self, metadata: Mapping[str, Any]) -> List[str]:
        return [name for name in self.required_fields if not is_present(metadata, name)]


@dataclass(frozen=True)
class StatusRule:
    from_statuses: FrozenSet[CaseStatus]
    to_statuses: FrozenSet[CaseStatus]
    allowed: bool = True
    reason: Optional[str] = None

    def matches(self, from_status: CaseStatus, to_status: CaseStatus) -> bool:
        return from_status in self.from_statuses and to_status in self.to_statuses


@dataclass(frozen=True)
class Advisory:
    """Non-blocking check: warn with ``message`` when ``condition`` holds."""

    condition: Condition
    message: str


@dataclass(frozen=True)
class PhaseRule:
    phase: CasePhase
    required_fields: Tuple[str, ...]
    conditional_rules: Tuple[ConditionalRule, ...] = ()
    status_rules: Tuple[StatusRule, ...] = ()
    # flags checked when the phase is formally completed
    completion_checks: Tuple[Tuple[str, str], ...] = ()
    # warnings raised when a case enters the phase
    entry_advisories: Tuple[Advisory, ...] = ()
    # warnings raised when a case leaves the phase
    exit_advisories: Tuple[Advisory, ...] = ()


@dataclass(frozen=True)
class PhaseCatalogEntry:
    estimated_duration_days: int
    requirements: Tuple[str, ...]
    critical_tasks: Tuple[str, ...]
    deliverables: Tuple[str, ...]


@dataclass
class CompletenessCheck:
    """Result of checking a phase's field requirements against metadata."""

    phase: CasePhase
    missing_fields: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.errors


@dataclass
class StatusCheck:
    allowed: bool
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None


def _statuses(*statuses: CaseStatus) -> FrozenSet[CaseStatus]:
    return frozenset(statuses)


def _when(case_type: CaseType, fields: Tuple[str, ...], message: str) -> ConditionalRule:
    return ConditionalRule(CaseTypeEquals(case_type), fields, message)


PHASE_RULES: Dict[CasePhase, PhaseRule] = {
    CasePhase.INTAKE: PhaseRule(
        phase=CasePhase.INTAKE,
        required_fields=("clientInformation", "caseDescription", "initialContactDate"),
        conditional_rules=(
            _when(
                CaseType.CRIMINAL_DEFENSE,
                ("arrestDate", "charges", "policeReportNumber"),
                "Criminal defense cases require arrest information and police report number",
            ),
            _when(
                CaseType.MEDICAL_MALPRACTICE,
                ("incidentDate", "healthcareProvider", "injuryDescription"),
                "Medical malpractice cases require incident details and healthcare provider information",
            ),
            _when(
                CaseType.DIVORCE_FAMILY,
                ("marriageDate", "spouseInformation", "childrenInformation"),
                "Divorce cases require marriage details and family information",
            ),
        ),
        status_rules=(
            StatusRule(_statuses(CaseStatus.INTAKE), _statuses(CaseStatus.ACTIVE, CaseStatus.PENDING)),
            StatusRule(
                _statuses(CaseStatus.INTAKE),
                _statuses(CaseStatus.CLOSED),
                reason="Case can be rejected during intake",
            ),
        ),
        completion_checks=(
            ("conflictCheckCompleted", "Conflict check must be completed before ending intake phase"),
        ),
    ),
    CasePhase.PREPARATION: PhaseRule(
        phase=CasePhase.PREPARATION,
        required_fields=("legalResearchCompleted", "documentPreparationStarted", "strategyDefined"),
        conditional_rules=(
            _when(
                CaseType.CRIMINAL_DEFENSE,
                ("bailHearingScheduled", "evidenceSecured", "witnessList"),
                "Criminal defense cases require bail hearing and evidence preparation",
            ),
            _when(
                CaseType.MEDICAL_MALPRACTICE,
                ("expertConsultationCompleted", "medicalRecordsReviewed", "violationAnalysis"),
                "Medical malpractice cases require expert consultation and records review",
            ),
            _when(
                CaseType.CONTRACT_DISPUTE,
                ("contractAnalyzed", "breachIdentified", "damagesCalculated"),
                "Contract disputes require contract analysis and damages calculation",
            ),
        ),
        status_rules=(
            StatusRule(_statuses(CaseStatus.INTAKE, CaseStatus.PENDING), _statuses(CaseStatus.ACTIVE)),
        ),
        completion_checks=(
            ("clientAgreementSigned", "Client agreement must be signed before ending preparation phase"),
        ),
        entry_advisories=(
            Advisory(
                CaseTypeEquals(CaseType.MEDICAL_MALPRACTICE) & Not(IsTrue("statuteOfLimitationsChecked")),
                "Statute of limitations should be verified for medical malpractice case",
            ),
        ),
        exit_advisories=(
            Advisory(Not(IsTrue("deadlinesMet")), "Some preparation deadlines may not have been met"),
        ),
    ),
    CasePhase.PROCEEDINGS: PhaseRule(
        phase=CasePhase.PROCEEDINGS,
        required_fields=("courtDocumentsFiled", "hearingScheduled", "evidenceSubmitted"),
        conditional_rules=(
            _when(
                CaseType.CRIMINAL_DEFENSE,
                ("arraignmentCompleted", "pleaEntered", "trialDateSet"),
                "Criminal defense cases require arraignment and plea information",
            ),
            _when(
                CaseType.DIVORCE_FAMILY,
                ("mediationCompleted", "custodyAgreement", "assetDivision"),
                "Divorce cases require mediation and custody arrangements",
            ),
            _when(
                CaseType.ADMINISTRATIVE_CASE,
                ("administrativeHearingScheduled", "evidencePackageSubmitted"),
                "Administrative cases require hearing scheduling and evidence submission",
            ),
        ),
        status_rules=(
            StatusRule(_statuses(CaseStatus.ACTIVE), _statuses(CaseStatus.PENDING)),
        ),
        completion_checks=(
            ("allHearingsAttended", "All required hearings must be attended before ending proceedings phase"),
        ),
        entry_advisories=(
            Advisory(
                CaseTypeEquals(CaseType.CRIMINAL_DEFENSE) & Not(IsTrue("bailPosted")),
                "Bail has not been posted for criminal defense case",
            ),
            Advisory(
                CaseTypeEquals(CaseType.DIVORCE_FAMILY) & Not(IsTrue("minorChildrenInvolved")),
                "Child custody arrangements should be confirmed for divorce cases",
            ),
        ),
        exit_advisories=(
            Advisory(Not(IsTrue("allEvidenceSubmitted")), "Not all evidence has been submitted in court"),
        ),
    ),
    CasePhase.RESOLUTION: PhaseRule(
        phase=CasePhase.RESOLUTION,
        required_fields=("judgmentReceived", "resolutionDocumented", "appealPeriodStarted"),
        conditional_rules=(
            _when(
                CaseType.CRIMINAL_DEFENSE,
                ("sentencingCompleted", "appealConsidered", "probationTerms"),
                "Criminal defense cases require sentencing and appeal consideration",
            ),
            _when(
                CaseType.CONTRACT_DISPUTE,
                ("judgmentEnforced", "settlementReceived", "damagesCollected"),
                "Contract disputes require judgment enforcement and damages collection",
            ),
            _when(
                CaseType.INHERITANCE_DISPUTE,
                ("willProbated", "assetsDistributed", "taxesPaid"),
                "Inheritance disputes require will probate and asset distribution",
            ),
        ),
        status_rules=(
            StatusRule(
                _statuses(CaseStatus.ACTIVE, CaseStatus.PENDING),
                _statuses(CaseStatus.COMPLETED),
            ),
        ),
        completion_checks=(
            ("finalJudgmentReceived", "Final judgment must be received before ending resolution phase"),
        ),
    ),
    CasePhase.CLOSURE: PhaseRule(
        phase=CasePhase.CLOSURE,
        required_fields=("finalDocumentation", "clientNotified", "feesSettled"),
        conditional_rules=(
            _when(
                CaseType.CRIMINAL_DEFENSE,
                ("recordExpunged", "probationCompleted", "restrictionsLifted"),
                "Criminal defense cases require record expungement and probation completion",
            ),
            _when(
                CaseType.DIVORCE_FAMILY,
                ("childSupportArranged", "visitationSchedule", "nameChangeProcessed"),
                "Divorce cases require child support and visitation arrangements",
            ),
            _when(
                CaseType.MEDICAL_MALPRACTICE,
                ("medicalBillsPaid", "insuranceClaimsSettled", "followUpCare"),
                "Medical malpractice cases require medical bills and insurance settlement",
            ),
        ),
        status_rules=(
            StatusRule(_statuses(CaseStatus.COMPLETED), _statuses(CaseStatus.CLOSED)),
            StatusRule(
                _statuses(CaseStatus.ACTIVE, CaseStatus.PENDING),
                _statuses(CaseStatus.CLOSED),
                reason="Case can be closed directly from active status",
            ),
        ),
    ),
}


PHASE_CATALOG: Dict[CasePhase, PhaseCatalogEntry] = {
    CasePhase.INTAKE: PhaseCatalogEntry(
        estimated_duration_days=7,
        requirements=("clientInformation", "caseDescription", "initialEvidence", "riskAssessment"),
        critical_tasks=("Initial consultation", "Risk assessment", "Document collection"),
        deliverables=("Client intake form", "Risk assessment report", "Case file setup"),
    ),
    CasePhase.PREPARATION: PhaseCatalogEntry(
        estimated_duration_days=30,
        requirements=("legalResearch", "documentPreparation", "witnessPreparation"),
        critical_tasks=("Legal research", "Document preparation", "Witness interviews"),
        deliverables=("Legal research memo", "Prepared documents", "Witness statements"),
    ),
    CasePhase.PROCEEDINGS: PhaseCatalogEntry(
        estimated_duration_days=90,
        requirements=("courtFiling", "evidenceSubmission", "hearingPreparation"),
        critical_tasks=("File court documents", "Submit evidence", "Prepare for hearings"),
        deliverables=("Court filings", "Evidence packages", "Hearing preparation"),
    ),
    CasePhase.RESOLUTION: PhaseCatalogEntry(
        estimated_duration_days=30,
        requirements=("judgmentAnalysis", "settlementNegotiation", "appealConsideration"),
        critical_tasks=("Analyze judgment", "Negotiate settlement", "Consider appeals"),
        deliverables=("Judgment analysis", "Settlement agreement", "Appeal decision"),
    ),
    CasePhase.CLOSURE: PhaseCatalogEntry(
        estimated_duration_days=14,
        requirements=("finalDocumentation", "clientNotification", "archivalPreparation"),
        critical_tasks=("Final documentation", "Client notification", "Case archival"),
        deliverables=("Final case report", "Client notification", "Archived case file"),
    ),
}


CASE_TYPE_REQUIREMENTS: Dict[CaseType, Dict[CasePhase, Tuple[str, ...]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        CasePhase.INTAKE: ("bailHearing", "policeReports", "witnessStatements"),
        CasePhase.PROCEEDINGS: ("courtAppearances", "evidencePresentation"),
    },
    CaseType.DIVORCE_FAMILY: {
        CasePhase.INTAKE: ("marriageCertificate", "childrenInformation"),
        CasePhase.PREPARATION: ("mediationAttempts", "custodyAgreement"),
    },
    CaseType.MEDICAL_MALPRACTICE: {
        CasePhase.INTAKE: ("medicalRecords", "expertReports"),
        CasePhase.PROCEEDINGS: ("expertTestimony", "medicalEvidence"),
    },
}


def requirements_for(phase: CasePhase) -> PhaseRule:
    """
    Look up the rule of a phase.

    Raises:
        ProgrammingError: if ``phase`` is not a known phase value
    """
    return PHASE_RULES[coerce_enum(CasePhase, phase)]


def required_fields_for(phase: CasePhase, case_type: CaseType, metadata: Mapping[str, Any]) -> List[str]:
    """Base fields plus the fields of every conditional rule that applies, in rule order."""
    rule = requirements_for(phase)
    case_type = coerce_enum(CaseType, case_type)
    fields = list(rule.required_fields)
    for conditional in rule.conditional_rules:
        if conditional.applies(case_type, metadata):
            fields.extend(name for name in conditional.required_fields if name not in fields)
    return fields


def check_phase_completeness(
    phase: CasePhase,
    case_type: CaseType,
    metadata: Mapping[str, Any]
) -> CompletenessCheck:
    """
    Check that everything needed to complete ``phase`` is present.

    Base fields and conditional fields are reported separately so each error
    message names the rule it comes from.
    """
    rule = requirements_for(phase)
    case_type = coerce_enum(CaseType, case_type)
    check = CompletenessCheck(phase=rule.phase)

    missing_base = [name for name in rule.required_fields if not is_present(metadata, name)]
    if missing_base:
        check.missing_fields.extend(missing_base)
        check.errors.append(
            f"Missing required fields for {rule.phase.value}: {', '.join(missing_base)}"
        )

    for conditional in rule.conditional_rules:
        if not conditional.applies(case_type, metadata):
            continue
        missing = [name for name in conditional.missing_fields(metadata) if name not in check.missing_fields]
        if missing:
            check.missing_fields.extend(missing)
            check.errors.append(f"{conditional.error_message}: missing {', '.join(missing)}")

    return check


def check_completion_flags(phase: CasePhase, metadata: Mapping[str, Any]) -> List[str]:
    """Messages for completion flags of ``phase`` that are not set to True."""
    rule = requirements_for(phase)
    return [message for flag, message in rule.completion_checks if metadata.get(flag) is not True]


def check_status_transition(
    phase: CasePhase,
    from_status: CaseStatus,
    to_status: CaseStatus
) -> StatusCheck:
    """
    Decide whether ``from_status -> to_status`` is legal while in ``phase``.

    The status rules are a strict allow-list: a pair no rule declares is
    illegal. Changing to the current status is not a transition.
    """
    rule = requirements_for(phase)
    from_status = coerce_enum(CaseStatus, from_status)
    to_status = coerce_enum(CaseStatus, to_status)

    if from_status is to_status:
        return StatusCheck(
            allowed=False,
            errors=[f"Case is already in status {to_status.value}"],
        )

    matching = next((sr for sr in rule.status_rules if sr.matches(from_status, to_status)), None)
    if matching is None:
        return StatusCheck(
            allowed=False,
            errors=[
                f"Status transition from {from_status.value} to {to_status.value} "
                f"is not defined for phase {rule.phase.value}"
            ],
        )
    if not matching.allowed:
        return StatusCheck(
            allowed=False,
            errors=[
                matching.reason
                or f"Status transition from {from_status.value} to {to_status.value} is not allowed"
            ],
            reason=matching.reason,
        )
    return StatusCheck(allowed=True, reason=matching.reason)


def allowed_status_targets(phase: CasePhase, from_status: CaseStatus) -> List[CaseStatus]:
    """Statuses reachable from ``from_status`` while in ``phase``, in enum order."""
    rule = requirements_for(phase)
    targets = set()
    for status_rule in rule.status_rules:
        if status_rule.allowed and from_status in status_rule.from_statuses:
            targets.update(status_rule.to_statuses)
    targets.discard(from_status)
    return [status for status in CaseStatus if status in targets]


def entry_warnings(phase: CasePhase, case_type: CaseType, metadata: Mapping[str, Any]) -> List[str]:
    rule = requirements_for(phase)
    return [a.message for a in rule.entry_advisories if a.condition.evaluate(case_type, metadata)]


def exit_warnings(phase: CasePhase, case_type: CaseType, metadata: Mapping[str, Any]) -> List[str]:
    rule = requirements_for(phase)
    warnings = [a.message for a in rule.exit_advisories if a.condition.evaluate(case_type, metadata)]
    warnings.extend(check_completion_flags(phase, metadata))
    return warnings


def phase_completion_percentage(
    phase: CasePhase,
    case_type: CaseType,
    metadata: Mapping[str, Any]
) -> int:
    """Share of the phase's required fields present in metadata, 0-100."""
    fields = required_fields_for(phase, case_type, metadata)
    if not fields:
        return 100
    present = sum(1 for name in fields if is_present(metadata, name))
    return round(present / len(fields) * 100)


def estimated_duration_days(phase: CasePhase) -> int:
    return PHASE_CATALOG[coerce_enum(CasePhase, phase)].estimated_duration_days


def get_phase_requirements(phase: CasePhase, case_type: CaseType) -> PhaseRequirements:
    """Catalogue entry of ``phase`` merged with the case type's additions."""
    phase = coerce_enum(CasePhase, phase)
    case_type = coerce_enum(CaseType, case_type)
    entry = PHASE_CATALOG[phase]

    requirements = list(entry.requirements)
    for name in CASE_TYPE_REQUIREMENTS.get(case_type, {}).get(phase, ()):
        if name not in requirements:
            requirements.append(name)

    return PhaseRequirements(
        phase=phase,
        requirements=requirements,
        estimated_duration_days=entry.estimated_duration_days,
        critical_tasks=list(entry.critical_tasks),
        deliverables=list(entry.deliverables),
    )
