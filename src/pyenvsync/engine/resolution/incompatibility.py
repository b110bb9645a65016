from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from pyenvsync.model.constraint.version_range_model import VersionRange

ROOT = "<root>"


def describe_package(package: str) -> str:
    return "the project" if package == ROOT else package


class Relation(Enum):
    SATISFIED = "satisfied"
    CONTRADICTED = "contradicted"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True, slots=True)
class Term:
    """
    A statement about one package: "some version in `versions` is selected"
    when positive, or "no version in `versions` is selected" when negative.

    A negative term is also satisfied when the package is not selected at
    all, which is why only a positive term can be empty.
    """
    package: str
    versions: VersionRange
    positive: bool = True

    @property
    def inverse(self) -> Term:
        return Term(self.package, self.versions, not self.positive)

    def is_empty(self) -> bool:
        return self.positive and self.versions.is_empty()

    def intersect(self, other: Term) -> Term:
        if self.positive and other.positive:
            return Term(self.package, self.versions.intersect(other.versions), True)
        if self.positive:
            return Term(self.package, self.versions.difference(other.versions), True)
        if other.positive:
            return Term(self.package, other.versions.difference(self.versions), True)
        return Term(self.package, self.versions.union(other.versions), False)

    def difference(self, other: Term) -> Term:
        return self.intersect(other.inverse)

    def satisfies(self, other: Term) -> bool:
        """True when every assignment allowed by this term is allowed by `other`."""
        match self.positive, other.positive:
            case True, True:
                return self.versions.is_subset(other.versions)
            case True, False:
                return self.versions.is_disjoint(other.versions)
            case False, True:
                return False
            case _:
                return other.versions.is_subset(self.versions)

    def relation(self, other: Term) -> Relation:
        """How this accumulated term relates to an incompatibility's term."""
        if self.satisfies(other):
            return Relation.SATISFIED
        match self.positive, other.positive:
            case True, True:
                contradicted = self.versions.is_disjoint(other.versions)
            case True, False:
                contradicted = self.versions.is_subset(other.versions)
            case False, True:
                contradicted = other.versions.is_subset(self.versions)
            case _:
                contradicted = False
        return Relation.CONTRADICTED if contradicted else Relation.INCONCLUSIVE

    def describe(self) -> str:
        name = describe_package(self.package)
        if self.package == ROOT or self.versions.is_full():
            return name
        return f"{name} {self.versions}"

    def __str__(self) -> str:
        return self.describe() if self.positive else f"not {self.describe()}"


class CauseKind(str, Enum):
    ROOT = "root"
    DEPENDENCY = "dependency"
    NO_VERSIONS = "no_versions"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    CONFLICT = "conflict"


@dataclass(eq=False, slots=True)
class Incompatibility:
    """
    A set of terms that must not all be true at once; the unit of learning.

    Derived incompatibilities (`CauseKind.CONFLICT`) keep the two
    incompatibilities they were derived from in `left` and `right`, which
    is the derivation graph the failure report walks.

    Attributes:
        terms (tuple[Term, ...]): At most one term per package.
        kind (CauseKind): Why the incompatibility holds.
        reason (str): Extra detail for NOT_FOUND and UNAVAILABLE.
        left (Incompatibility | None): First parent of a derived one.
        right (Incompatibility | None): Second parent of a derived one.
    """
    terms: tuple[Term, ...]
    kind: CauseKind
    reason: str = ""
    left: Incompatibility | None = None
    right: Incompatibility | None = None

    @classmethod
    def create(
            cls,
            terms: Iterable[Term],
            kind: CauseKind,
            *,
            reason: str = "",
            left: Incompatibility | None = None,
            right: Incompatibility | None = None) -> Incompatibility:
        merged: dict[str, Term] = {}
        for term in terms:
            prior = merged.get(term.package)
            merged[term.package] = term if prior is None else prior.intersect(term)
        return cls(tuple(merged.values()), kind, reason, left, right)

    @property
    def is_derived(self) -> bool:
        return self.kind is CauseKind.CONFLICT

    def is_failure(self) -> bool:
        return not self.terms or (len(self.terms) == 1 and self.terms[0].package == ROOT and self.terms[0].positive)

    def packages(self) -> list[str]:
        return [t.package for t in self.terms]

    def __str__(self) -> str:
        match self.kind:
            case CauseKind.DEPENDENCY:
                depender, dependee = self.terms[0], self.terms[1]
                if dependee.versions.is_empty():
                    return f"{depender.describe()} depends on {dependee.package} with an impossible version range"
                return f"{depender.describe()} depends on {dependee.inverse.describe()}"
            case CauseKind.NO_VERSIONS:
                term = self.terms[0]
                detail = f" ({self.reason})" if self.reason else ""
                if term.versions.is_full():
                    return f"no versions of {term.package} are available{detail}"
                return f"no versions of {term.package} match {term.versions}{detail}"
            case CauseKind.NOT_FOUND:
                return f"{self.terms[0].package} doesn't exist ({self.reason})" if self.reason \
                    else f"{self.terms[0].package} doesn't exist"
            case CauseKind.UNAVAILABLE:
                return f"{self.terms[0].describe()} is unavailable ({self.reason})"
            case CauseKind.ROOT:
                return "the project is the root of the resolution"
        return self._conflict_str()

    def _conflict_str(self) -> str:
        if self.is_failure():
            return "version solving failed"
        if len(self.terms) == 1:
            term = self.terms[0]
            return f"{term.describe()} is forbidden" if term.positive else f"{term.describe()} is required"

        positive = [t for t in self.terms if t.positive]
        negative = [t for t in self.terms if not t.positive]
        if len(positive) == 1 and len(negative) == 1:
            return f"{positive[0].describe()} requires {negative[0].describe()}"
        if not negative:
            if len(positive) == 2:
                return f"{positive[0].describe()} is incompatible with {positive[1].describe()}"
            return f"one of {' or '.join(t.describe() for t in positive)} must be false"
        if not positive:
            return f"one of {' or '.join(t.describe() for t in negative)} must be true"
        return (f"if {' and '.join(t.describe() for t in positive)} "
                f"then {' or '.join(t.describe() for t in negative)}")

    def and_to_string(self, other: Incompatibility, this_line: int | None = None, other_line: int | None = None) -> str:
        this_text = f"{self} ({this_line})" if this_line is not None else str(self)
        other_text = f"{other} ({other_line})" if other_line is not None else str(other)
        return f"{this_text} and {other_text}"
