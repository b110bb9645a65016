from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from packaging.version import Version

from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.constraint.marker_model import (
    TRUE, MarkerCompare, MarkerExpr, marker_and, marker_or, parse_marker)
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.requirement.requirement_model import RequirementRoot, Source

LOCKFILE_FORMAT_VERSION = 1
RESOLVER_VERSION = "pubgrub-1"

# Facts that tell configured target environments apart, in the order they
# are tried when describing a region.
_REGION_FACTS: tuple[str, ...] = (
    "sys_platform",
    "platform_machine",
    "implementation_name",
    "python_version",
    "python_full_version",
)


@dataclass(frozen=True, slots=True)
class MarkerRegion:
    """
    A subset of the configured target environments plus the marker
    expression that selects exactly that subset among them.

    Attributes:
        environments (frozenset[str]): Keys of the member environments.
        marker (MarkerExpr): The symbolic definition; TRUE when the region
            covers every configured environment.
    """
    environments: frozenset[str]
    marker: MarkerExpr = TRUE

    @classmethod
    def describe(cls, members: Iterable[TargetEnvironment], universe: Iterable[TargetEnvironment]) -> MarkerRegion:
        """
        Builds the region for `members`, choosing the smallest marker that
        separates them from the rest of `universe`.

        A single fact is used when its values alone separate the members;
        otherwise each member is spelled out as a conjunction over the facts
        that vary across the universe.
        """
        members = sorted(members, key=lambda e: e.key)
        universe = sorted(universe, key=lambda e: e.key)
        keys = frozenset(e.key for e in members)
        outside = [e for e in universe if e.key not in keys]
        if not outside:
            return cls(keys, TRUE)

        facts = {e.key: e.marker_environment() for e in universe}
        varying = [f for f in _REGION_FACTS if len({facts[e.key][f] for e in universe}) > 1]

        for fact in varying:
            inside_values = {facts[e.key][fact] for e in members}
            if not any(facts[e.key][fact] in inside_values for e in outside):
                marker = marker_or(*(MarkerCompare(fact, "==", v) for v in sorted(inside_values)))
                return cls(keys, marker.canonical())

        marker = marker_or(*(
            marker_and(*(MarkerCompare(f, "==", facts[e.key][f]) for f in varying))
            for e in members))
        return cls(keys, marker.canonical())


@dataclass(frozen=True, kw_only=True, slots=True)
class ResolvedPackage(MultiformatModelMixin):
    """
    One lockfile entry.

    Attributes:
        name (str): Normalized package name.
        version (Version): The locked version.
        marker_region (MarkerExpr): The environments this entry is valid for;
            TRUE means every configured environment.
        source (Source): Where to install it from.
        dependencies (tuple[str, ...]): Sorted names of the packages this one
            requires within its region.
    """
    name: str
    version: Version
    marker_region: MarkerExpr = TRUE
    source: Source = field(default_factory=Source.registry)
    dependencies: tuple[str, ...] = ()

    def sort_key(self) -> tuple[str, str]:
        return self.name, str(self.marker_region)

    def applies_to(self, environment: TargetEnvironment) -> bool:
        return self.marker_region.evaluate(environment.marker_environment())

    def to_mapping(self) -> dict[str, Any]:
        # field order is fixed for stable diffs
        return {
            "name": self.name,
            "version": str(self.version),
            "marker_region": str(self.marker_region),
            "source": str(self.source),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> ResolvedPackage:
        return cls(
            name=str(mapping["name"]),
            version=parse_version(mapping["version"]),
            marker_region=parse_marker(mapping.get("marker_region", "")),
            source=source_from_str(str(mapping.get("source", "registry+pypi"))),
            dependencies=tuple(mapping.get("dependencies", ())))


def source_from_str(text: str) -> Source:
    """Inverse of `str(Source)`."""
    kind, _, location = text.partition("+")
    match kind:
        case "registry":
            return Source.registry(location)
        case "editable":
            return Source.path(location, editable=True)
        case "path":
            return Source.path(location)
        case "url":
            return Source.url(location)
        case _:
            raise ValueError(f"unrecognized source {text!r}")


@dataclass(frozen=True, kw_only=True, slots=True)
class RootEntry(MultiformatModelMixin):
    """
    Records which requirement root introduced a top-level package, so that
    synchronization can install only the selected roots.
    """
    root: RequirementRoot
    name: str
    marker: MarkerExpr = TRUE

    def sort_key(self) -> tuple[str, str, str]:
        return str(self.root), self.name, str(self.marker)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "name": self.name,
            "marker": str(self.marker),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> RootEntry:
        return cls(
            root=RequirementRoot.parse(mapping["root"]),
            name=str(mapping["name"]),
            marker=parse_marker(mapping.get("marker", "")))


@dataclass(frozen=True, kw_only=True, slots=True)
class Solution(MultiformatModelMixin):
    """
    The result of one resolution: locked packages keyed by marker region.

    No two entries for one name have overlapping regions. When every entry
    is universal the solution is single-region and `selected` is the whole
    answer; otherwise `forks` and `for_environment` give per-platform views.

    Attributes:
        packages (tuple[ResolvedPackage, ...]): Sorted by name then region.
        roots (tuple[RootEntry, ...]): Sorted root entries.
        environments (tuple[TargetEnvironment, ...]): The configured targets,
            sorted by key.
    """
    packages: tuple[ResolvedPackage, ...] = ()
    roots: tuple[RootEntry, ...] = ()
    environments: tuple[TargetEnvironment, ...] = ()

    @classmethod
    def create(
            cls,
            packages: Iterable[ResolvedPackage],
            roots: Iterable[RootEntry],
            environments: Iterable[TargetEnvironment]) -> Solution:
        """Builds a solution in canonical order so equal content compares equal."""
        return cls(
            packages=tuple(sorted(packages, key=ResolvedPackage.sort_key)),
            roots=tuple(sorted(set(roots), key=RootEntry.sort_key)),
            environments=tuple(sorted({e.key: e for e in environments}.values(), key=lambda e: e.key)))

    @property
    def is_universal(self) -> bool:
        return all(p.marker_region.is_always_true() for p in self.packages)

    @property
    def selected(self) -> dict[str, ResolvedPackage]:
        """
        Name to entry, for the packages locked to a single entry across all
        regions. Forked packages appear only in `forks`.
        """
        counts: dict[str, int] = {}
        for p in self.packages:
            counts[p.name] = counts.get(p.name, 0) + 1
        return {p.name: p for p in self.packages if counts[p.name] == 1}

    @property
    def forks(self) -> dict[str, dict[str, ResolvedPackage]]:
        """Environment key to that environment's name-to-entry mapping."""
        return {env.key: self.for_environment(env) for env in self.environments}

    def for_environment(self, environment: TargetEnvironment) -> dict[str, ResolvedPackage]:
        facts = environment.marker_environment()
        return {p.name: p for p in self.packages if p.marker_region.evaluate(facts)}

    def to_mapping(self) -> dict[str, Any]:
        return {
            "environments": [e.key for e in self.environments],
            "roots": [r.to_mapping() for r in self.roots],
            "packages": [p.to_mapping() for p in self.packages],
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Solution:
        return cls.create(
            packages=(ResolvedPackage.from_mapping(p) for p in mapping.get("packages", ())),
            roots=(RootEntry.from_mapping(r) for r in mapping.get("roots", ())),
            environments=(TargetEnvironment.from_key(k) for k in mapping.get("environments", ())))


@dataclass(frozen=True, kw_only=True, slots=True)
class Lockfile:
    """
    A persisted solution plus the metadata needed to decide whether it can
    still be trusted.
    """
    solution: Solution
    requirement_hash: str
    format_version: int = LOCKFILE_FORMAT_VERSION
    resolver_version: str = RESOLVER_VERSION
