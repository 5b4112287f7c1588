"""
Case-type transition validator.

Encodes case-type business constraints that span phases: the fields each
case type needs before it enters preparation, prohibited fields, "if flag
then require field" rules, data that must exist before a later phase can
start, and the settlement approval threshold. Timeline and document checks
produce warnings only.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from backend.app.models.domain.conditions import (
    Always,
    Condition,
    FieldExists,
    FieldGreaterThan,
    IsTrue,
    Or,
)
from backend.app.models.domain.lifecycle import (
    CasePhase,
    CaseType,
    coerce_enum,
    is_present,
)
from backend.app.utils.logging import get_logger
from backend.config.settings import get_settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConditionalRequirement:
    """If ``condition`` holds when entering ``phase``, ``required`` must hold too."""

    phase: CasePhase
    condition: Condition
    required: Condition
    message: str


@dataclass(frozen=True)
class DocumentRequirement:
    document_type: str
    phase: CasePhase
    description: str
    required: bool = True


@dataclass(frozen=True)
class TimelineConstraint:
    phase: CasePhase
    max_duration_days: int
    critical_milestones: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CaseTypeProfile:
    """
    Rules of one case type.

    ``required_fields`` must be present whenever a phase listed in
    ``additional_required_fields`` is entered, together with that phase's
    own fields. At initialization they are only reported as warnings.
    """

    case_type: CaseType
    required_fields: Tuple[str, ...] = ()
    additional_required_fields: Dict[CasePhase, Tuple[str, ...]] = field(default_factory=dict)
    prohibited_fields: Tuple[str, ...] = ()
    requirements: Tuple[ConditionalRequirement, ...] = ()
    documents: Tuple[DocumentRequirement, ...] = ()
    timeline: Tuple[TimelineConstraint, ...] = ()
    fee_structures: Tuple[str, ...] = ()
    recommendations: Tuple[Tuple[Optional[CasePhase], CasePhase, str], ...] = ()


@dataclass
class ValidationOutcome:
    errors: List[str] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _if_true(phase: CasePhase, flag: str, required_field: str) -> ConditionalRequirement:
    return ConditionalRequirement(
        phase=phase,
        condition=IsTrue(flag),
        required=FieldExists(required_field),
        message=f"Conditional requirement not met: {required_field} is required when {flag} is true",
    )


def _docs(phase: CasePhase, *documents: Tuple[str, str]) -> Tuple[DocumentRequirement, ...]:
    return tuple(DocumentRequirement(doc_type, phase, description) for doc_type, description in documents)


_PREP = CasePhase.PREPARATION
_PROC = CasePhase.PROCEEDINGS
_INTAKE = CasePhase.INTAKE


CASE_TYPE_PROFILES: Dict[CaseType, CaseTypeProfile] = {
    CaseType.CRIMINAL_DEFENSE: CaseTypeProfile(
        case_type=CaseType.CRIMINAL_DEFENSE,
        required_fields=("defendantInformation", "charges", "arrestDate", "courtInformation", "policeReports"),
        additional_required_fields={
            _INTAKE: ("arrestRecords", "policeReports", "bailInformation"),
            _PREP: ("evidenceList", "witnessList", "defenseStrategy"),
        },
        prohibited_fields=("plaintiffDemands", "settlementAmount"),
        requirements=(
            _if_true(_PREP, "isFelony", "preliminaryHearingDate"),
            _if_true(_PROC, "pleaBargain", "pleaAgreement"),
            ConditionalRequirement(
                phase=_PROC,
                condition=Always(),
                required=Or(FieldExists("bailAmount"), IsTrue("bailPosted"), IsTrue("bailDenied")),
                message="Criminal defense cases require bail information before formal proceedings",
            ),
            ConditionalRequirement(
                phase=_PROC,
                condition=Always(),
                required=FieldExists("arraignmentDate"),
                message="Criminal defense cases require an arraignment date before formal proceedings",
            ),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("ArrestRecords", "Arrest and booking records"),
                ("PoliceReports", "Official police reports"),
                ("ChargingDocuments", "Formal charges"),
            )
            + _docs(_PREP, ("BailDocuments", "Bail and bond documents"))
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 14, ("Arraignment",)),
            TimelineConstraint(_PREP, 90, ("Preliminary hearing", "Trial preparation")),
        ),
        fee_structures=("flat", "hourly", "retainer"),
        recommendations=(
            (_INTAKE, _PREP, "Consider plea bargain options before proceeding to formal proceedings"),
        ),
    ),
    CaseType.MEDICAL_MALPRACTICE: CaseTypeProfile(
        case_type=CaseType.MEDICAL_MALPRACTICE,
        required_fields=("patientInformation", "healthcareProvider", "incidentDate", "injuryDescription", "medicalRecords"),
        additional_required_fields={
            _INTAKE: ("medicalRecords", "expertConsultation", "injuryDocumentation"),
            _PREP: ("expertReports", "violationAnalysis", "damagesAssessment"),
        },
        requirements=(
            _if_true(_PREP, "emergencyTreatment", "emergencyRecords"),
            _if_true(_PROC, "permanentInjury", "lifeCarePlan"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("MedicalRecords", "Complete medical history"),
                ("IncidentReport", "Medical incident report"),
                ("ConsentForms", "Patient consent forms"),
            )
            + _docs(_PREP, ("ExpertReport", "Medical expert analysis"))
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 90, ("Statute of limitations check",)),
            TimelineConstraint(_PREP, 180, ("Expert review completed",)),
        ),
        fee_structures=("contingency",),
        recommendations=(
            (None, _PREP, "Consider consulting with medical experts early in the preparation phase"),
        ),
    ),
    CaseType.DIVORCE_FAMILY: CaseTypeProfile(
        case_type=CaseType.DIVORCE_FAMILY,
        required_fields=("marriageInformation", "spouseInformation", "childrenInformation", "assetInformation", "incomeInformation"),
        additional_required_fields={
            _INTAKE: ("marriageCertificate", "childrenDetails", "residencyInformation"),
            _PREP: ("assetValuation", "incomeDocumentation", "custodyAgreement"),
        },
        requirements=(
            _if_true(_PREP, "minorChildren", "childCustodyPreferences"),
            _if_true(_PROC, "highConflict", "parentingCoordinator"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("MarriageCertificate", "Official marriage certificate"),
                ("BirthCertificates", "Children's birth certificates"),
            )
            + _docs(
                _PREP,
                ("FinancialStatements", "Financial disclosure statements"),
                ("PropertyDeeds", "Real property documentation"),
            )
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 30, ("Residency verification",)),
            TimelineConstraint(_PREP, 120, ("Mediation completion", "Financial disclosure")),
        ),
        fee_structures=("flat", "hourly", "retainer"),
        recommendations=(
            (None, _PREP, "Mediation should be attempted before formal proceedings"),
        ),
    ),
    CaseType.CONTRACT_DISPUTE: CaseTypeProfile(
        case_type=CaseType.CONTRACT_DISPUTE,
        required_fields=("contractInformation", "partiesInvolved", "breachDetails", "damagesClaimed", "contractValue"),
        additional_required_fields={
            _INTAKE: ("contractDocument", "breachEvidence", "correspondence"),
            _PREP: ("damageCalculations", "expertReports", "settlementDemand"),
        },
        requirements=(
            _if_true(_PREP, "international", "jurisdictionAnalysis"),
            _if_true(_PROC, "liquidatedDamages", "enforceabilityReview"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("ContractDocument", "Signed contract agreement"),
                ("BreachEvidence", "Evidence of breach"),
                ("Correspondence", "Related correspondence"),
            )
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 45, ("Statute of limitations check",)),
            TimelineConstraint(_PREP, 90, ("Demand letter sent",)),
        ),
        fee_structures=("hourly", "contingency", "flat"),
    ),
    CaseType.ADMINISTRATIVE_CASE: CaseTypeProfile(
        case_type=CaseType.ADMINISTRATIVE_CASE,
        required_fields=("agencyInformation", "caseNumber", "violationDetails", "hearingInformation", "regulatoryCitations"),
        additional_required_fields={
            _INTAKE: ("agencyNotice", "violationDetails", "responseDeadline"),
            _PREP: ("legalArguments", "evidencePackage", "witnessList"),
        },
        requirements=(
            _if_true(_PREP, "licenseSuspension", "licenseDetails"),
            _if_true(_PROC, "emergencyHearing", "emergencyMotion"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("AgencyNotice", "Official agency notice"),
                ("ViolationReport", "Violation details report"),
            )
            + _docs(
                _PREP,
                ("Regulations", "Applicable regulations"),
                ("HearingNotice", "Hearing notice"),
            )
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 30, ("Response deadline",)),
            TimelineConstraint(_PREP, 60, ("Hearing preparation",)),
        ),
        fee_structures=("hourly", "flat"),
    ),
    CaseType.INHERITANCE_DISPUTE: CaseTypeProfile(
        case_type=CaseType.INHERITANCE_DISPUTE,
        required_fields=("deceasedInformation", "willInformation", "beneficiaryInformation", "assetInventory", "executorInformation"),
        additional_required_fields={
            _INTAKE: ("deathCertificate", "willDocument", "probateCourtInformation"),
            _PREP: ("assetAppraisal", "creditorClaims", "beneficiaryNotices"),
        },
        requirements=(
            ConditionalRequirement(
                phase=_PREP,
                condition=Always(),
                required=FieldExists("deathCertificate"),
                message="Inheritance disputes require a death certificate before preparation",
            ),
            _if_true(_PREP, "noWill", "intestacyInformation"),
            _if_true(_PREP, "isContested", "contestGrounds"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("DeathCertificate", "Official death certificate"),
                ("WillDocument", "Last will and testament"),
            )
            + _docs(
                _PREP,
                ("AssetInventory", "Complete asset inventory"),
                ("ProbateDocuments", "Probate court filings"),
            )
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 60, ("Will probate",)),
            TimelineConstraint(_PREP, 365, ("Creditor notification", "Asset distribution")),
        ),
        fee_structures=("hourly", "flat"),
    ),
    CaseType.LABOR_DISPUTE: CaseTypeProfile(
        case_type=CaseType.LABOR_DISPUTE,
        required_fields=("employerInformation", "employeeInformation", "employmentContract", "disputeDetails", "employmentDates"),
        additional_required_fields={
            _INTAKE: ("laborContract", "payRecords", "workHistory"),
            _PREP: ("witnessStatements", "expertReports", "damageCalculations"),
        },
        prohibited_fields=("criminalRecord", "medicalHistory"),
        requirements=(
            _if_true(_PREP, "unionMember", "unionContract"),
            _if_true(_PROC, "severancePay", "severanceAgreement"),
        ),
        documents=(
            _docs(
                _INTAKE,
                ("EmploymentContract", "Original employment contract"),
                ("PayStubs", "Recent pay statements"),
                ("TerminationLetter", "Notice of termination"),
            )
            + _docs(_PREP, ("LaborComplaint", "Filed labor complaint"))
        ),
        timeline=(
            TimelineConstraint(_INTAKE, 30, ("File complaint with labor bureau",)),
            TimelineConstraint(_PREP, 60, ("Mediation attempt",)),
        ),
        fee_structures=("contingency", "hourly"),
    ),
    CaseType.OTHER: CaseTypeProfile(case_type=CaseType.OTHER),
}


class CaseTypeValidator:
    """
    Pure validator of case-type constraints on phase transitions.

    The settlement approval threshold is read from settings unless given
    explicitly.
    """

    def __init__(self, settlement_approval_threshold: Optional[float] = None):
        if settlement_approval_threshold is None:
            settlement_approval_threshold = get_settings().lifecycle.settlement_approval_threshold
        self.settlement_approval_threshold = float(settlement_approval_threshold)

    def profile_for(self, case_type: CaseType) -> CaseTypeProfile:
        return CASE_TYPE_PROFILES[coerce_enum(CaseType, case_type)]

    def validate_case_type_transition(
        self,
        case_type: CaseType,
        from_phase: CasePhase,
        to_phase: CasePhase,
        metadata: Optional[Mapping[str, Any]] = None,
        phase_started_at: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> ValidationOutcome:
        """
        Validate case-type rules for moving from ``from_phase`` to ``to_phase``.

        Early termination into closure only applies the prohibited-field
        check; the remaining rules gate progress through the normal sequence.

        Args:
            case_type: Case type of the case
            from_phase: Current phase
            to_phase: Requested phase
            metadata: Merged case metadata
            phase_started_at: When the case entered ``from_phase``
            now: Reference time for timeline checks

        Returns:
            ValidationOutcome with errors, warnings and recommendations
        """
        case_type = coerce_enum(CaseType, case_type)
        from_phase = coerce_enum(CasePhase, from_phase)
        to_phase = coerce_enum(CasePhase, to_phase)
        metadata = metadata or {}
        profile = CASE_TYPE_PROFILES[case_type]
        outcome = ValidationOutcome()

        outcome.errors.extend(self._check_prohibited_fields(profile, metadata))

        early_termination = to_phase is CasePhase.CLOSURE and from_phase is not CasePhase.RESOLUTION
        if not early_termination:
            missing = self._missing_required_fields(profile, to_phase, metadata)
            if missing:
                outcome.missing_fields.extend(missing)
                outcome.errors.append(
                    f"Missing required fields for {case_type.value} case in {to_phase.value}: {', '.join(missing)}"
                )
            outcome.errors.extend(self._check_requirements(profile, to_phase, metadata))
            outcome.errors.extend(self._check_settlement_approval(case_type, to_phase, metadata))
            outcome.warnings.extend(self._check_documents(profile, from_phase, metadata))
            outcome.recommendations.extend(
                message
                for rec_from, rec_to, message in profile.recommendations
                if rec_to is to_phase and (rec_from is None or rec_from is from_phase)
            )

        outcome.warnings.extend(
            self._check_timeline(profile, from_phase, metadata, phase_started_at, now)
        )

        if outcome.errors:
            logger.debug(
                "Case type validation failed",
                case_type=case_type.value,
                from_phase=from_phase.value,
                to_phase=to_phase.value,
                error_count=len(outcome.errors)
            )
        return outcome

    def validate_case_type_initialization(
        self,
        case_type: CaseType,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> ValidationOutcome:
        """
        Initial metadata may not carry prohibited fields.

        Case-type and intake fields that are still missing are returned as
        warnings; they become blocking when the case enters preparation.
        """
        profile = self.profile_for(case_type)
        metadata = metadata or {}
        outcome = ValidationOutcome()
        outcome.errors.extend(self._check_prohibited_fields(profile, metadata))

        missing = self._missing_required_fields(profile, CasePhase.INTAKE, metadata)
        if missing:
            outcome.missing_fields.extend(missing)
            outcome.warnings.append(
                f"Missing initial requirements for {profile.case_type.value} case: {', '.join(missing)}"
            )
        return outcome

    def case_type_requirements(self, case_type: CaseType, phase: Optional[CasePhase] = None) -> List[str]:
        """Case-type required fields, plus the additional fields of ``phase`` when given."""
        profile = self.profile_for(case_type)
        fields = list(profile.required_fields)
        if phase is not None:
            fields.extend(profile.additional_required_fields.get(coerce_enum(CasePhase, phase), ()))
        return list(dict.fromkeys(fields))

    def document_requirements(
        self,
        case_type: CaseType,
        phase: Optional[CasePhase] = None
    ) -> List[DocumentRequirement]:
        profile = self.profile_for(case_type)
        return [doc for doc in profile.documents if phase is None or doc.phase is phase]

    def timeline_constraints(self, case_type: CaseType) -> List[TimelineConstraint]:
        return list(self.profile_for(case_type).timeline)

    def fee_structures(self, case_type: CaseType) -> List[str]:
        return list(self.profile_for(case_type).fee_structures)

    @staticmethod
    def _check_prohibited_fields(profile: CaseTypeProfile, metadata: Mapping[str, Any]) -> List[str]:
        present = [name for name in profile.prohibited_fields if metadata.get(name) is not None]
        if not present:
            return []
        return [
            f"Prohibited fields present for {profile.case_type.value} case: {', '.join(present)}"
        ]

    @staticmethod
    def _missing_required_fields(
        profile: CaseTypeProfile,
        phase: CasePhase,
        metadata: Mapping[str, Any]
    ) -> List[str]:
        if phase not in profile.additional_required_fields:
            return []
        wanted = dict.fromkeys(profile.required_fields + profile.additional_required_fields[phase])
        return [name for name in wanted if not is_present(metadata, name)]

    @staticmethod
    def _check_requirements(
        profile: CaseTypeProfile,
        to_phase: CasePhase,
        metadata: Mapping[str, Any]
    ) -> List[str]:
        errors = []
        for requirement in profile.requirements:
            if requirement.phase is not to_phase:
                continue
            if not requirement.condition.evaluate(profile.case_type, metadata):
                continue
            if not requirement.required.evaluate(profile.case_type, metadata):
                errors.append(requirement.message)
        return errors

    def _check_settlement_approval(
        self,
        case_type: CaseType,
        to_phase: CasePhase,
        metadata: Mapping[str, Any]
    ) -> List[str]:
        if to_phase is not CasePhase.RESOLUTION:
            return []
        large_settlement = FieldGreaterThan("settlementAmount", self.settlement_approval_threshold)
        if large_settlement.evaluate(case_type, metadata) and not IsTrue("courtApprovalObtained").evaluate(
            case_type, metadata
        ):
            return [
                f"Settlement amount above {self.settlement_approval_threshold:,.2f} requires "
                f"courtApprovalObtained before resolution"
            ]
        return []

    @staticmethod
    def _check_documents(
        profile: CaseTypeProfile,
        phase: CasePhase,
        metadata: Mapping[str, Any]
    ) -> List[str]:
        documents = metadata.get("documents")
        if not isinstance(documents, list):
            return []
        provided = {doc.get("type") for doc in documents if isinstance(doc, Mapping)}
        missing = [
            doc.document_type
            for doc in profile.documents
            if doc.phase is phase and doc.required and doc.document_type not in provided
        ]
        if not missing:
            return []
        return [f"Missing required documents for {phase.value}: {', '.join(missing)}"]

    @staticmethod
    def _check_timeline(
        profile: CaseTypeProfile,
        phase: CasePhase,
        metadata: Mapping[str, Any],
        phase_started_at: Optional[datetime],
        now: Optional[datetime]
    ) -> List[str]:
        constraint = next((c for c in profile.timeline if c.phase is phase), None)
        if constraint is None:
            return []

        started = phase_started_at
        if started is None and is_present(metadata, "phaseStartDate"):
            try:
                started = datetime.fromisoformat(str(metadata["phaseStartDate"]).replace("Z", "+00:00"))
            except ValueError:
                return [f"phaseStartDate is not an ISO-8601 date: {metadata['phaseStartDate']!r}"]
        if started is None:
            return []
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)

        elapsed_days = ((now or datetime.now(timezone.utc)) - started).days
        if elapsed_days > constraint.max_duration_days:
            return [
                f"{phase.value} phase has exceeded maximum duration of "
                f"{constraint.max_duration_days} days"
            ]
        return []


def validate_case_type_transition(
    case_type: CaseType,
    from_phase: CasePhase,
    to_phase: CasePhase,
    metadata: Optional[Mapping[str, Any]] = None
) -> ValidationOutcome:
    """Validate with the configured settlement threshold."""
    return CaseTypeValidator().validate_case_type_transition(case_type, from_phase, to_phase, metadata)
