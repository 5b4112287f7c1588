"""
Unit tests for the typed condition predicates.

Test Coverage:
- Field predicates (equality, presence, containment, numeric threshold)
- Case type predicate
- Structural composition with And, Or and Not
- Descriptions and field introspection used in error messages
"""

import pytest

from backend.app.models.domain.conditions import (
    Always,
    And,
    CaseTypeEquals,
    FieldContains,
    FieldEquals,
    FieldExists,
    FieldGreaterThan,
    FieldNotEquals,
    FieldNotExists,
    IsTrue,
    Not,
    Or,
)
from backend.app.models.domain.lifecycle import CaseType


class TestFieldPredicates:
    """Test suite for single-field predicates."""

    def setup_method(self):
        self.case_type = CaseType.OTHER

    def test_field_equals_matches_value(self):
        condition = FieldEquals("courtName", "District Court")

        assert condition.evaluate(self.case_type, {"courtName": "District Court"})
        assert not condition.evaluate(self.case_type, {"courtName": "Appeals Court"})
        assert not condition.evaluate(self.case_type, {})

    def test_field_equals_does_not_confuse_bool_and_int(self):
        """True must not be equal to 1 for flag checks."""
        condition = IsTrue("riskAssessmentCompleted")

        assert condition.evaluate(self.case_type, {"riskAssessmentCompleted": True})
        assert not condition.evaluate(self.case_type, {"riskAssessmentCompleted": 1})
        assert not condition.evaluate(self.case_type, {"riskAssessmentCompleted": "true"})
        assert not FieldEquals("witnessCount", 1).evaluate(self.case_type, {"witnessCount": True})

    @pytest.mark.parametrize("value,expected", [
        ("A-123", True),
        (False, True),
        (0, True),
        ("", False),
        (None, False),
    ])
    def test_field_exists(self, value, expected):
        assert FieldExists("policeReportNumber").evaluate(self.case_type, {"policeReportNumber": value}) is expected

    def test_field_not_exists(self):
        condition = FieldNotExists("arrestDate")

        assert condition.evaluate(self.case_type, {})
        assert not condition.evaluate(self.case_type, {"arrestDate": "2026-01-02"})

    def test_field_not_equals(self):
        condition = FieldNotEquals("settlementStatus", "rejected")

        assert condition.evaluate(self.case_type, {"settlementStatus": "accepted"})
        assert condition.evaluate(self.case_type, {})
        assert not condition.evaluate(self.case_type, {"settlementStatus": "rejected"})

    def test_field_contains(self):
        condition = FieldContains("charges", "DUI")

        assert condition.evaluate(self.case_type, {"charges": ["DUI", "Speeding"]})
        assert condition.evaluate(self.case_type, {"charges": "DUI, Speeding"})
        assert not condition.evaluate(self.case_type, {"charges": ["Theft"]})
        assert not condition.evaluate(self.case_type, {"charges": 42})

    def test_field_greater_than(self):
        condition = FieldGreaterThan("settlementAmount", 100_000)

        assert condition.evaluate(self.case_type, {"settlementAmount": 150_000})
        assert condition.evaluate(self.case_type, {"settlementAmount": "150000.50"})
        assert not condition.evaluate(self.case_type, {"settlementAmount": 100_000})
        assert not condition.evaluate(self.case_type, {"settlementAmount": "a lot"})
        assert not condition.evaluate(self.case_type, {"settlementAmount": True})
        assert not condition.evaluate(self.case_type, {})


class TestComposition:
    """Test suite for composed predicates."""

    def test_case_type_equals(self):
        condition = CaseTypeEquals(CaseType.CRIMINAL_DEFENSE, CaseType.LABOR_DISPUTE)

        assert condition.evaluate(CaseType.CRIMINAL_DEFENSE, {})
        assert not condition.evaluate(CaseType.DIVORCE_FAMILY, {})
        assert condition.describe() == "case type in {criminal_defense, labor_dispute}"

    def test_operators_build_structural_predicates(self):
        condition = CaseTypeEquals(CaseType.MEDICAL_MALPRACTICE) & ~IsTrue("statuteOfLimitationsChecked")

        assert isinstance(condition, And)
        assert isinstance(condition.conditions[1], Not)
        assert condition.evaluate(CaseType.MEDICAL_MALPRACTICE, {})
        assert not condition.evaluate(CaseType.MEDICAL_MALPRACTICE, {"statuteOfLimitationsChecked": True})
        assert not condition.evaluate(CaseType.OTHER, {})

    def test_or_holds_when_any_branch_holds(self):
        condition = FieldExists("bailAmount") | IsTrue("bailPosted") | IsTrue("bailDenied")

        assert condition.evaluate(CaseType.CRIMINAL_DEFENSE, {"bailDenied": True})
        assert not condition.evaluate(CaseType.CRIMINAL_DEFENSE, {"bailPosted": False})

    def test_fields_are_collected_from_branches(self):
        condition = Or(FieldExists("bailAmount"), And(IsTrue("bailPosted"), Not(FieldExists("bailDenied"))))

        assert condition.fields() == frozenset({"bailAmount", "bailPosted", "bailDenied"})
        assert CaseTypeEquals(CaseType.OTHER).fields() == frozenset()

    def test_describe_is_readable(self):
        condition = And(IsTrue("mediationAttempted"), FieldExists("custodyAgreement"))

        assert condition.describe() == "(mediationAttempted == True) and (custodyAgreement is provided)"
        assert FieldGreaterThan("settlementAmount", 100_000).describe() == "settlementAmount > 100000"

    def test_predicates_are_hashable_values(self):
        assert IsTrue("caseRejected") == FieldEquals("caseRejected", True)
        assert len({IsTrue("caseRejected"), FieldEquals("caseRejected", True)}) == 1

    def test_always(self):
        assert Always().evaluate(CaseType.OTHER, {})
        assert Always().describe() == "always"
