from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pyenvsync.errors import PackageNotFoundError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.requirement.candidate_model import PackageCandidate
from pyenvsync.model.requirement.requirement_model import Requirement, normalize_name


class PackageMetadataProvider(ABC):
    """
    The capability the resolver consumes to learn which versions of a package
    exist and what each would require.

    Implementations may raise `PackageNotFoundError` for a package that
    exists in no configured source, and `TransientFetchError` for failures
    worth retrying. Retrying is done by the candidate cache, never by the
    provider or the solver.
    """

    @abstractmethod
    def candidates_for(self, name: str) -> Sequence[PackageCandidate]:
        """Returns every known candidate of `name`, newest first."""
        raise NotImplementedError

    def declared_requirements(self, candidate: PackageCandidate) -> frozenset[Requirement]:
        return frozenset(candidate.declared_requirements)


class StaticMetadataProvider(PackageMetadataProvider, MultiformatModelMixin):
    """
    A provider backed by a fixed snapshot of an index, held in memory.

    The snapshot can be loaded from a JSON, TOML, or YAML file shaped like:

        [[package]]
        name = "requests"
        version = "2.32.3"
        requires = ["urllib3>=1.21.1,<3", "idna>=2.5,<4"]
        requires_python = ">=3.8"
    """

    def __init__(self, candidates: Iterable[PackageCandidate] = ()):
        self._by_name: dict[str, list[PackageCandidate]] = {}
        for candidate in candidates:
            self.add(candidate)

    def add(self, candidate: PackageCandidate) -> None:
        entries = self._by_name.setdefault(candidate.name, [])
        entries.append(candidate)
        entries.sort(key=lambda c: c.version, reverse=True)

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def candidates_for(self, name: str) -> Sequence[PackageCandidate]:
        try:
            return tuple(self._by_name[normalize_name(name)])
        except KeyError:
            raise PackageNotFoundError(normalize_name(name)) from None

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "package": [c.to_mapping() for name in self.names() for c in self._by_name[name]],
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> StaticMetadataProvider:
        return cls(PackageCandidate.from_mapping(entry) for entry in mapping.get("package", ()))

    @classmethod
    def load(cls, path: str | Path) -> StaticMetadataProvider:
        return cls.from_file(path)
