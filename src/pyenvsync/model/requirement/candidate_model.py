from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import Version

from pyenvsync.errors import ConstraintError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.constraint.marker_model import TRUE, MarkerCompare, MarkerExpr, marker_and, parse_marker
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.requirement.requirement_model import Requirement, Source, normalize_name


def requires_python_marker(requires_python: str | None) -> MarkerExpr:
    """
    Turns a `Requires-Python` specifier into the equivalent marker over
    `python_full_version`.
    """
    text = (requires_python or "").strip()
    if not text:
        return TRUE
    try:
        spec_set = SpecifierSet(text)
    except InvalidSpecifier as e:
        raise ConstraintError(f"invalid Requires-Python {text!r}") from e
    return marker_and(*(MarkerCompare("python_full_version", s.operator, s.version) for s in spec_set))


@dataclass(frozen=True, kw_only=True, slots=True)
class PackageCandidate(MultiformatModelMixin):
    """
    A concrete version of a package as reported by a metadata provider.

    Attributes:
        name (str): Normalized package name.
        version (Version): The candidate version.
        declared_requirements (tuple[Requirement, ...]): What selecting this
            candidate would impose, including extra-gated requirements.
        markers_supported (MarkerExpr): The environments the candidate can be
            installed in; usually derived from `Requires-Python`.
        source (Source): Where the candidate comes from.
    """
    name: str
    version: Version
    declared_requirements: tuple[Requirement, ...] = ()
    markers_supported: MarkerExpr = TRUE
    source: Source = field(default_factory=Source.registry)

    @classmethod
    def create(
            cls,
            name: str,
            version: str | Version,
            requires: list[str] | tuple[str, ...] = (),
            *,
            requires_python: str | None = None,
            source: Source | None = None) -> PackageCandidate:
        """Builds a candidate from PEP 508 strings, as found in core metadata."""
        return cls(
            name=normalize_name(name),
            version=version if isinstance(version, Version) else parse_version(version),
            declared_requirements=tuple(Requirement.parse(r) for r in requires),
            markers_supported=requires_python_marker(requires_python),
            source=source or Source.registry())

    @property
    def is_prerelease(self) -> bool:
        return self.version.is_prerelease

    def __str__(self) -> str:
        return f"{self.name} {self.version}"

    def to_mapping(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": str(self.version),
            "requires": [str(r) for r in self.declared_requirements],
            "markers_supported": str(self.markers_supported),
            "source": self.source.to_mapping(),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> PackageCandidate:
        if "requires_python" in mapping:
            supported = requires_python_marker(mapping.get("requires_python"))
        else:
            supported = parse_marker(mapping.get("markers_supported", ""))
        return cls(
            name=normalize_name(mapping["name"]),
            version=parse_version(mapping["version"]),
            declared_requirements=tuple(Requirement.parse(r) for r in mapping.get("requires", ())),
            markers_supported=supported,
            source=Source.from_mapping(mapping.get("source", {})))
