from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import ClassVar

from pyenvsync.model.requirement.candidate_model import PackageCandidate
from pyenvsync.model.requirement.requirement_model import SourceKind


class TieBreakStrategy(ABC):
    """
    Orders the candidates of one package for the solver.

    Versions are always tried newest first; a strategy only decides between
    candidates that share a version but differ in provenance, such as a
    local build and a registry release. Third-party strategies are
    published under the `pyenvsync.tie_break` entry-point group.

    Attributes:
        name (str): The name used in configuration (`tie_break = "..."`).
        precedence (int): Sort order when strategies are listed.
    """
    name: ClassVar[str]
    precedence: ClassVar[int] = 100

    @abstractmethod
    def source_rank(self, candidate: PackageCandidate) -> int:
        raise NotImplementedError

    def order(self, candidates: Iterable[PackageCandidate]) -> list[PackageCandidate]:
        ranked = sorted(candidates, key=lambda c: (self.source_rank(c), str(c.source)))
        return sorted(ranked, key=lambda c: c.version, reverse=True)


class NewestFirstStrategy(TieBreakStrategy):
    """Newest version first; equal versions ordered by source string."""
    name = "newest"
    precedence = 10

    def source_rank(self, candidate: PackageCandidate) -> int:
        return 0


class PreferLocalStrategy(TieBreakStrategy):
    """Newest version first; at equal versions path beats URL beats registry."""
    name = "prefer-local"
    precedence = 20

    _RANKS: ClassVar[dict[SourceKind, int]] = {SourceKind.PATH: 0, SourceKind.URL: 1, SourceKind.REGISTRY: 2}

    def source_rank(self, candidate: PackageCandidate) -> int:
        return self._RANKS[candidate.source.kind]


class PreferRegistryStrategy(TieBreakStrategy):
    """Newest version first; at equal versions registry releases win."""
    name = "prefer-registry"
    precedence = 30

    def source_rank(self, candidate: PackageCandidate) -> int:
        return 0 if candidate.source.is_registry else 1
