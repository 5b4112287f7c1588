"""
Unit tests for the case-type transition validator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.case_type_validator import CASE_TYPE_PROFILES, CaseTypeValidator
from backend.app.core.exceptions import ProgrammingError
from backend.app.models.domain.lifecycle import CasePhase, CaseType


CRIMINAL_PREPARATION_FIELDS = {
    "defendantInformation": "John Doe, born 1990",
    "charges": "DUI",
    "arrestDate": "2026-01-20",
    "courtInformation": "County Court, Dept. 4",
    "policeReports": "Report 2026-114",
    "evidenceList": "Dashcam footage",
    "witnessList": "Officer Smith",
    "defenseStrategy": "Challenge stop legality",
}
INHERITANCE_PREPARATION_FIELDS = {
    "deceasedInformation": "Mary Roe",
    "willInformation": "Will dated 2019",
    "beneficiaryInformation": "Three children",
    "assetInventory": "House and savings",
    "executorInformation": "Tom Roe",
    "assetAppraisal": "Appraised 2026-03",
    "creditorClaims": "None filed",
    "beneficiaryNotices": "Sent 2026-03-10",
}


class TestCaseTypeTransitionValidation:
    """Test suite for blocking case-type rules."""

    def setup_method(self):
        self.validator = CaseTypeValidator(settlement_approval_threshold=100_000)

    def test_every_case_type_has_a_profile(self):
        assert set(CASE_TYPE_PROFILES) == set(CaseType)

    def test_prohibited_fields(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {**CRIMINAL_PREPARATION_FIELDS, "settlementAmount": 5000, "plaintiffDemands": "Damages"}
        )

        assert not outcome.is_valid
        assert outcome.errors == [
            "Prohibited fields present for criminal_defense case: plaintiffDemands, settlementAmount"
        ]

    def test_flag_requires_field(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {**CRIMINAL_PREPARATION_FIELDS, "isFelony": True}
        )

        assert outcome.errors == [
            "Conditional requirement not met: preliminaryHearingDate is required when isFelony is true"
        ]

        satisfied = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {**CRIMINAL_PREPARATION_FIELDS, "isFelony": True, "preliminaryHearingDate": "2026-05-01"}
        )
        assert satisfied.is_valid

    def test_criminal_proceedings_need_bail_and_arraignment(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.PREPARATION, CasePhase.PROCEEDINGS, {}
        )

        assert outcome.errors == [
            "Criminal defense cases require bail information before formal proceedings",
            "Criminal defense cases require an arraignment date before formal proceedings",
        ]

        satisfied = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.PREPARATION,
            CasePhase.PROCEEDINGS,
            {"bailDenied": True, "arraignmentDate": "2026-04-12"}
        )
        assert satisfied.is_valid

    def test_inheritance_requires_death_certificate(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.INHERITANCE_DISPUTE, CasePhase.INTAKE, CasePhase.PREPARATION, INHERITANCE_PREPARATION_FIELDS
        )

        assert outcome.errors == ["Inheritance disputes require a death certificate before preparation"]

    def test_early_termination_only_checks_prohibited_fields(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.PREPARATION, CasePhase.CLOSURE, {"isFelony": True}
        )
        prohibited = self.validator.validate_case_type_transition(
            CaseType.LABOR_DISPUTE, CasePhase.INTAKE, CasePhase.CLOSURE, {"medicalHistory": "n/a"}
        )

        assert outcome.is_valid
        assert outcome.recommendations == []
        assert not prohibited.is_valid

    @pytest.mark.parametrize("amount,approved,expected_valid", [
        (250_000, False, False),
        ("250000", False, False),
        (250_000, True, True),
        (100_000, False, True),
        (50_000, False, True),
    ])
    def test_settlement_approval_threshold(self, amount, approved, expected_valid):
        metadata = {"settlementAmount": amount}
        if approved:
            metadata["courtApprovalObtained"] = True

        outcome = self.validator.validate_case_type_transition(
            CaseType.CONTRACT_DISPUTE, CasePhase.PROCEEDINGS, CasePhase.RESOLUTION, metadata
        )

        assert outcome.is_valid is expected_valid

    def test_settlement_threshold_is_configurable(self):
        validator = CaseTypeValidator(settlement_approval_threshold=10_000)

        outcome = validator.validate_case_type_transition(
            CaseType.OTHER, CasePhase.PROCEEDINGS, CasePhase.RESOLUTION, {"settlementAmount": 20_000}
        )

        assert outcome.errors == [
            "Settlement amount above 10,000.00 requires courtApprovalObtained before resolution"
        ]

    def test_unknown_case_type_is_a_programming_error(self):
        with pytest.raises(ProgrammingError):
            self.validator.validate_case_type_transition(
                "maritime", CasePhase.INTAKE, CasePhase.PREPARATION, {}
            )


class TestCaseTypeAdvisories:
    """Test suite for warnings and recommendations."""

    def setup_method(self):
        self.validator = CaseTypeValidator(settlement_approval_threshold=100_000)
        self.now = datetime(2026, 6, 1, tzinfo=timezone.utc)

    def test_missing_documents_warn(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {**CRIMINAL_PREPARATION_FIELDS, "documents": [{"type": "PoliceReports"}]}
        )

        assert outcome.is_valid
        assert outcome.warnings == [
            "Missing required documents for intake: ArrestRecords, ChargingDocuments"
        ]

    def test_documents_are_not_checked_without_a_document_list(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.PREPARATION, {}
        )

        assert outcome.warnings == []

    def test_timeline_overrun_warns(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {},
            phase_started_at=self.now - timedelta(days=20),
            now=self.now
        )

        assert outcome.warnings == ["intake phase has exceeded maximum duration of 14 days"]

    def test_timeline_within_limit(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {},
            phase_started_at=self.now - timedelta(days=3),
            now=self.now
        )

        assert outcome.warnings == []

    def test_timeline_reads_phase_start_date_from_metadata(self):
        overdue = self.validator.validate_case_type_transition(
            CaseType.LABOR_DISPUTE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {"phaseStartDate": "2026-01-01T00:00:00Z"},
            now=self.now
        )
        malformed = self.validator.validate_case_type_transition(
            CaseType.LABOR_DISPUTE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {"phaseStartDate": "last spring"},
            now=self.now
        )

        assert overdue.warnings == ["intake phase has exceeded maximum duration of 30 days"]
        assert malformed.warnings == ["phaseStartDate is not an ISO-8601 date: 'last spring'"]

    def test_recommendations(self):
        criminal = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.PREPARATION, {}
        )
        medical = self.validator.validate_case_type_transition(
            CaseType.MEDICAL_MALPRACTICE,
            CasePhase.INTAKE,
            CasePhase.PREPARATION,
            {"emergencyTreatment": False}
        )

        assert criminal.recommendations == [
            "Consider plea bargain options before proceeding to formal proceedings"
        ]
        assert medical.recommendations == [
            "Consider consulting with medical experts early in the preparation phase"
        ]


class TestCaseTypeProfiles:
    """Test suite for profile lookups."""

    def setup_method(self):
        self.validator = CaseTypeValidator(settlement_approval_threshold=100_000)

    def test_initialization_rejects_prohibited_fields(self):
        outcome = self.validator.validate_case_type_initialization(
            CaseType.LABOR_DISPUTE, {"criminalRecord": "none"}
        )

        assert outcome.errors == ["Prohibited fields present for labor_dispute case: criminalRecord"]
        assert self.validator.validate_case_type_initialization(CaseType.LABOR_DISPUTE, {}).is_valid

    def test_document_requirements(self):
        intake_docs = self.validator.document_requirements(CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE)
        all_docs = self.validator.document_requirements(CaseType.CRIMINAL_DEFENSE)

        assert [doc.document_type for doc in intake_docs] == [
            "ArrestRecords", "PoliceReports", "ChargingDocuments"
        ]
        assert len(all_docs) == 4

    def test_fee_structures_and_timeline(self):
        assert self.validator.fee_structures(CaseType.MEDICAL_MALPRACTICE) == ["contingency"]
        assert self.validator.fee_structures(CaseType.OTHER) == []
        assert [c.max_duration_days for c in self.validator.timeline_constraints(CaseType.DIVORCE_FAMILY)] == [30, 120]


class TestCaseTypeRequiredFields:
    """Test suite for the fields each case type needs before preparation."""

    def setup_method(self):
        self.validator = CaseTypeValidator(settlement_approval_threshold=100_000)

    def test_preparation_requires_case_type_fields(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.PREPARATION, {"charges": "DUI"}
        )

        assert outcome.missing_fields == [
            "defendantInformation",
            "arrestDate",
            "courtInformation",
            "policeReports",
            "evidenceList",
            "witnessList",
            "defenseStrategy",
        ]
        assert outcome.errors == [
            "Missing required fields for criminal_defense case in preparation: defendantInformation, "
            "arrestDate, courtInformation, policeReports, evidenceList, witnessList, defenseStrategy"
        ]

    def test_complete_case_type_fields_pass(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.PREPARATION, CRIMINAL_PREPARATION_FIELDS
        )

        assert outcome.is_valid
        assert outcome.missing_fields == []

    def test_empty_string_counts_as_missing(self):
        metadata = {**CRIMINAL_PREPARATION_FIELDS, "witnessList": ""}

        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.PREPARATION, metadata
        )

        assert outcome.missing_fields == ["witnessList"]

    def test_later_phases_do_not_repeat_the_check(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.LABOR_DISPUTE, CasePhase.PREPARATION, CasePhase.PROCEEDINGS, {}
        )

        assert outcome.is_valid

    def test_early_termination_waives_required_fields(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.CRIMINAL_DEFENSE, CasePhase.INTAKE, CasePhase.CLOSURE, {}
        )

        assert outcome.is_valid

    def test_other_cases_have_no_case_type_fields(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.OTHER, CasePhase.INTAKE, CasePhase.PREPARATION, {}
        )

        assert outcome.is_valid
        assert self.validator.case_type_requirements(CaseType.OTHER, CasePhase.PREPARATION) == []

    def test_case_type_requirements(self):
        base = self.validator.case_type_requirements(CaseType.MEDICAL_MALPRACTICE)
        intake = self.validator.case_type_requirements(CaseType.MEDICAL_MALPRACTICE, CasePhase.INTAKE)
        preparation = self.validator.case_type_requirements(CaseType.DIVORCE_FAMILY, "preparation")

        assert base == [
            "patientInformation", "healthcareProvider", "incidentDate", "injuryDescription", "medicalRecords"
        ]
        assert intake == base + ["expertConsultation", "injuryDocumentation"]
        assert preparation[-3:] == ["assetValuation", "incomeDocumentation", "custodyAgreement"]

    def test_initialization_warns_about_missing_fields(self):
        outcome = self.validator.validate_case_type_initialization(
            CaseType.CRIMINAL_DEFENSE,
            {
                "defendantInformation": "John Doe",
                "charges": "DUI",
                "arrestDate": "2026-01-20",
                "courtInformation": "County Court",
            }
        )

        assert outcome.is_valid
        assert outcome.missing_fields == ["policeReports", "arrestRecords", "bailInformation"]
        assert outcome.warnings == [
            "Missing initial requirements for criminal_defense case: policeReports, arrestRecords, bailInformation"
        ]


class TestInheritanceContest:
    """Test suite for contested estates."""

    def setup_method(self):
        self.validator = CaseTypeValidator(settlement_approval_threshold=100_000)
        self.metadata = {**INHERITANCE_PREPARATION_FIELDS, "deathCertificate": "Issued 2026-01-02", "isContested": True}

    def test_contest_grounds_required_when_entering_preparation(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.INHERITANCE_DISPUTE, CasePhase.INTAKE, CasePhase.PREPARATION, self.metadata
        )

        assert outcome.errors == [
            "Conditional requirement not met: contestGrounds is required when isContested is true"
        ]

    def test_contest_grounds_satisfied(self):
        metadata = {**self.metadata, "contestGrounds": "Undue influence"}

        outcome = self.validator.validate_case_type_transition(
            CaseType.INHERITANCE_DISPUTE, CasePhase.INTAKE, CasePhase.PREPARATION, metadata
        )

        assert outcome.is_valid

    def test_contest_grounds_not_checked_entering_proceedings(self):
        outcome = self.validator.validate_case_type_transition(
            CaseType.INHERITANCE_DISPUTE, CasePhase.PREPARATION, CasePhase.PROCEEDINGS, {"isContested": True}
        )

        assert outcome.is_valid
