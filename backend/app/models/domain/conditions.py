"""
Typed condition predicates over case type and metadata.

Rules are built from a small closed set of predicate kinds composed
structurally. Nothing is parsed or executed at runtime; every predicate can
describe itself for error messages and list the metadata fields it reads.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, FrozenSet, Mapping, Tuple

from backend.app.models.domain.lifecycle import CaseType, is_present


class Condition(ABC):
    """Base class of all predicate kinds."""

    @abstractmethod
    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        """Return True when the predicate holds for the case."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable form used in error messages."""

    def fields(self) -> FrozenSet[str]:
        """Metadata fields read by this predicate."""
        return frozenset()

    def __and__(self, other: "Condition") -> "And":
        return And(self, other)

    def __or__(self, other: "Condition") -> "Or":
        return Or(self, other)

    def __invert__(self) -> "Not":
        return Not(self)


@dataclass(frozen=True)
class FieldEquals(Condition):
    field: str
    value: Any

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        actual = metadata.get(self.field)
        # True must not match 1 and vice versa
        if isinstance(self.value, bool) or isinstance(actual, bool):
            return actual is self.value
        return actual == self.value

    def describe(self) -> str:
        return f"{self.field} == {self.value!r}"

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.field})


@dataclass(frozen=True)
class FieldExists(Condition):
    field: str

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return is_present(metadata, self.field)

    def describe(self) -> str:
        return f"{self.field} is provided"

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.field})


@dataclass(frozen=True)
class FieldContains(Condition):
    """The field is a string or collection containing ``item``."""

    field: str
    item: Any

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        actual = metadata.get(self.field)
        if isinstance(actual, (str, list, tuple, set, frozenset)):
            try:
                return self.item in actual
            except TypeError:
                return False
        return False

    def describe(self) -> str:
        return f"{self.field} contains {self.item!r}"

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.field})


@dataclass(frozen=True)
class FieldGreaterThan(Condition):
    """The field is numeric and strictly greater than ``threshold``."""

    field: str
    threshold: float

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        actual = metadata.get(self.field)
        if isinstance(actual, bool):
            return False
        if isinstance(actual, str):
            try:
                actual = float(actual)
            except ValueError:
                return False
        return isinstance(actual, (int, float)) and actual > self.threshold

    def describe(self) -> str:
        return f"{self.field} > {self.threshold:g}"

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.field})


@dataclass(frozen=True)
class CaseTypeEquals(Condition):
    """The case type is one of ``case_types``."""

    case_types: FrozenSet[CaseType]

    def __init__(self, *case_types: CaseType):
        object.__setattr__(self, "case_types", frozenset(case_types))

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return case_type in self.case_types

    def describe(self) -> str:
        names = sorted(case_type.value for case_type in self.case_types)
        return f"case type in {{{', '.join(names)}}}"


@dataclass(frozen=True)
class And(Condition):
    conditions: Tuple[Condition, ...]

    def __init__(self, *conditions: Condition):
        object.__setattr__(self, "conditions", tuple(conditions))

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return all(condition.evaluate(case_type, metadata) for condition in self.conditions)

    def describe(self) -> str:
        return " and ".join(f"({condition.describe()})" for condition in self.conditions)

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(condition.fields() for condition in self.conditions))


@dataclass(frozen=True)
class Or(Condition):
    conditions: Tuple[Condition, ...]

    def __init__(self, *conditions: Condition):
        object.__setattr__(self, "conditions", tuple(conditions))

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return any(condition.evaluate(case_type, metadata) for condition in self.conditions)

    def describe(self) -> str:
        return " or ".join(f"({condition.describe()})" for condition in self.conditions)

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(condition.fields() for condition in self.conditions))


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(case_type, metadata)

    def describe(self) -> str:
        return f"not ({self.condition.describe()})"

    def fields(self) -> FrozenSet[str]:
        return self.condition.fields()


class Always(Condition):
    """Predicate that always holds. Used for unconditional rules."""

    def evaluate(self, case_type: CaseType, metadata: Mapping[str, Any]) -> bool:
        return True

    def describe(self) -> str:
        return "always"


def FieldNotExists(field: str) -> Condition:
    return Not(FieldExists(field))


def FieldNotEquals(field: str, value: Any) -> Condition:
    return Not(FieldEquals(field, value))


def IsTrue(field: str) -> Condition:
    """Shorthand for a boolean flag set to True."""
    return FieldEquals(field, True)
