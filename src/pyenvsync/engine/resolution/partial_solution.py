from __future__ import annotations

from dataclasses import dataclass

from packaging.version import Version

from pyenvsync.engine.resolution.incompatibility import Incompatibility, Relation, Term
from pyenvsync.model.constraint.version_range_model import VersionRange


@dataclass(frozen=True, slots=True)
class Assignment:
    """
    One entry of the trail: a decision (cause is None) or a derivation.

    Attributes:
        term (Term): What was assigned.
        decision_level (int): Number of decisions made when it was assigned.
        index (int): Position in the trail.
        cause (Incompatibility | None): The incompatibility a derivation
            came from.
    """
    term: Term
    decision_level: int
    index: int
    cause: Incompatibility | None = None

    @property
    def package(self) -> str:
        return self.term.package

    @property
    def is_decision(self) -> bool:
        return self.cause is None


class PartialSolution:
    """
    The solver's current partial assignment, kept as an explicit trail.

    For each package the trail's terms are folded into one accumulated term
    (positive once any assignment is positive). Backtracking truncates the
    trail to a decision level and recomputes the accumulated terms of the
    packages it touched. Nothing here outlives one solver run.
    """

    def __init__(self):
        self._assignments: list[Assignment] = []
        self._decisions: dict[str, Version] = {}
        self._positive: dict[str, Term] = {}
        self._negative: dict[str, Term] = {}

    @property
    def decisions(self) -> dict[str, Version]:
        return dict(self._decisions)

    @property
    def decision_level(self) -> int:
        return len(self._decisions)

    @property
    def assignments(self) -> tuple[Assignment, ...]:
        return tuple(self._assignments)

    def unsatisfied(self) -> list[Term]:
        """Positive terms of packages that have no decision yet."""
        return [t for name, t in self._positive.items() if name not in self._decisions]

    def decide(self, package: str, version: Version) -> None:
        self._decisions[package] = version
        self._assign(Assignment(Term(package, VersionRange.exact(version)), self.decision_level, len(self._assignments)))

    def derive(self, term: Term, cause: Incompatibility) -> None:
        self._assign(Assignment(term, self.decision_level, len(self._assignments), cause))

    def _assign(self, assignment: Assignment) -> None:
        self._assignments.append(assignment)
        self._register(assignment)

    def _register(self, assignment: Assignment) -> None:
        name = assignment.package
        old_positive = self._positive.get(name)
        if old_positive is not None:
            self._positive[name] = old_positive.intersect(assignment.term)
            return

        old_negative = self._negative.get(name)
        term = assignment.term if old_negative is None else assignment.term.intersect(old_negative)
        if term.positive:
            self._negative.pop(name, None)
            self._positive[name] = term
        else:
            self._negative[name] = term

    def backtrack(self, decision_level: int) -> None:
        """Drops every assignment made after `decision_level`."""
        touched: set[str] = set()
        while self._assignments and self._assignments[-1].decision_level > decision_level:
            removed = self._assignments.pop()
            touched.add(removed.package)
            if removed.is_decision:
                self._decisions.pop(removed.package, None)

        for name in touched:
            self._positive.pop(name, None)
            self._negative.pop(name, None)
        for assignment in self._assignments:
            if assignment.package in touched:
                self._register(assignment)

    def relation(self, term: Term) -> Relation:
        accumulated = self._positive.get(term.package) or self._negative.get(term.package)
        if accumulated is None:
            return Relation.INCONCLUSIVE
        return accumulated.relation(term)

    def satisfies(self, term: Term) -> bool:
        return self.relation(term) is Relation.SATISFIED

    def satisfier(self, term: Term) -> Assignment:
        """
        The earliest assignment after which the accumulated term for
        `term.package` satisfies `term`.

        Raises:
            LookupError: If `term` is not satisfied by the whole trail.
        """
        accumulated: Term | None = None
        for assignment in self._assignments:
            if assignment.package != term.package:
                continue
            accumulated = assignment.term if accumulated is None else accumulated.intersect(assignment.term)
            if accumulated.satisfies(term):
                return assignment
        raise LookupError(f"[BUG] {term} is not satisfied")
