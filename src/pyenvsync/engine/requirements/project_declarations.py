from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pyenvsync.engine.audit.audit_event_model import StageType, audit
from pyenvsync.errors import ConstraintError
from pyenvsync.helper.toml_utils import load_toml_file
from pyenvsync.model.requirement.requirement_model import (
    RUNTIME, Requirement, RequirementRoot, Source, normalize_name)

PROJECT_FILE_NAME = "pyproject.toml"


@dataclass(frozen=True, kw_only=True, slots=True)
class ProjectDeclarations:
    """
    The requirement declarations of one project, as written.

    Attributes:
        name (str | None): The normalized project name, used to expand
            self-referencing extras such as `myproj[test]`.
        dependencies (tuple[str, ...]): `[project].dependencies`.
        optional_dependencies (Mapping[str, tuple[str, ...]]): Extras.
        dependency_groups (Mapping[str, tuple[Any, ...]]): PEP 735 groups;
            entries are strings or `{include-group = "..."}` tables.
        sources (Mapping[str, Source]): Per-package source overrides from
            `[tool.pyenvsync.sources]`.
        project_dir (Path | None): Where relative path sources are anchored.
    """
    name: str | None = None
    dependencies: tuple[str, ...] = ()
    optional_dependencies: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    dependency_groups: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)
    sources: Mapping[str, Source] = field(default_factory=dict)
    project_dir: Path | None = None

    @classmethod
    def from_pyproject(cls, doc: Mapping[str, Any], project_dir: Path | None = None) -> ProjectDeclarations:
        project = doc.get("project", {}) or {}
        tool = (doc.get("tool", {}) or {}).get("pyenvsync", {}) or {}
        name = project.get("name")
        return cls(
            name=normalize_name(name) if name else None,
            dependencies=tuple(project.get("dependencies", ())),
            optional_dependencies={
                normalize_name(k): tuple(v) for k, v in (project.get("optional-dependencies", {}) or {}).items()},
            dependency_groups={
                normalize_name(k): tuple(v) for k, v in (doc.get("dependency-groups", {}) or {}).items()},
            sources={
                normalize_name(k): _parse_source(k, v, project_dir) for k, v in (tool.get("sources", {}) or {}).items()},
            project_dir=project_dir)


def _parse_source(name: str, table: Any, project_dir: Path | None) -> Source:
    if not isinstance(table, Mapping):
        raise ConstraintError(f"source for {name!r} must be a table")
    if "path" in table:
        path = Path(str(table["path"]))
        if project_dir is not None and not path.is_absolute():
            path = project_dir / path
        return Source.path(path, editable=bool(table.get("editable", False)))
    if "url" in table:
        return Source.url(str(table["url"]))
    if "index" in table:
        return Source.registry(str(table["index"]))
    raise ConstraintError(f"source for {name!r} needs one of 'path', 'url', or 'index'")


def load_project_declarations(project_dir: Path) -> ProjectDeclarations:
    """
    Reads the project's pyproject.toml.

    Raises:
        FileNotFoundError: If the project has no pyproject.toml.
    """
    return ProjectDeclarations.from_pyproject(load_toml_file(project_dir / PROJECT_FILE_NAME), project_dir)


class _Collector:
    """Expands one root's declarations into Requirements."""

    def __init__(self, declarations: ProjectDeclarations):
        self._decl = declarations
        self.out: set[Requirement] = set()

    def add(self, lines: Iterable[str], root: RequirementRoot, seen_extras: frozenset[str] = frozenset()) -> None:
        for line in lines:
            req = Requirement.parse(line, root=root)
            if self._decl.name is not None and req.name == self._decl.name:
                # self-reference: pull in the named extras of this project
                for extra in sorted(req.extras - seen_extras):
                    if extra not in self._decl.optional_dependencies:
                        raise ConstraintError(f"{line!r} names unknown extra {extra!r}")
                    self.add(self._decl.optional_dependencies[extra], root, seen_extras | {extra})
                continue
            source = self._decl.sources.get(req.name)
            if source is not None and req.source.is_registry:
                req = req.with_source(source)
            self.out.add(req)

    def add_group(self, group: str, root: RequirementRoot, stack: tuple[str, ...] = ()) -> None:
        if group in stack:
            raise ConstraintError(f"dependency group cycle: {' -> '.join((*stack, group))}")
        if group not in self._decl.dependency_groups:
            raise ConstraintError(f"unknown dependency group {group!r}")
        lines: list[str] = []
        for entry in self._decl.dependency_groups[group]:
            if isinstance(entry, str):
                lines.append(entry)
            elif isinstance(entry, Mapping) and "include-group" in entry:
                self.add_group(normalize_name(entry["include-group"]), root, (*stack, group))
            else:
                raise ConstraintError(f"invalid entry in dependency group {group!r}: {entry!r}")
        self.add(lines, root)


@audit(StageType.RESOLVE, substage="collect_requirements")
def collect_requirements(
        root_declarations: ProjectDeclarations,
        selected_extras: Iterable[str],
        selected_groups: Iterable[str] = ()) -> frozenset[Requirement]:
    """
    Collects the root requirements of a project.

    Runtime requirements are always included. An extra's requirements are
    included only when the extra is named in `selected_extras`, and a
    dependency group's only when it is named in `selected_groups`. Every
    returned requirement is tagged with the root that introduced it, so a
    package needed by both the runtime set and a group appears once per
    root.

    Args:
        root_declarations (ProjectDeclarations): The project's declarations.
        selected_extras (Iterable[str]): Extras to activate.
        selected_groups (Iterable[str]): Dependency groups to activate.

    Returns:
        frozenset[Requirement]: The root requirements.

    Raises:
        ConstraintError: If a requirement is malformed, or an unknown extra or
            group is selected.
    """
    collector = _Collector(root_declarations)
    collector.add(root_declarations.dependencies, RUNTIME)

    for extra in sorted({normalize_name(e) for e in selected_extras}):
        if extra not in root_declarations.optional_dependencies:
            raise ConstraintError(f"unknown extra {extra!r}")
        collector.add(root_declarations.optional_dependencies[extra], RequirementRoot.extra(extra), frozenset({extra}))

    for group in sorted({normalize_name(g) for g in selected_groups}):
        collector.add_group(group, RequirementRoot.group(group))

    return frozenset(collector.out)


def all_roots(declarations: ProjectDeclarations) -> tuple[list[str], list[str]]:
    """Every extra and every group of a project, for locking all roots at once."""
    return sorted(declarations.optional_dependencies), sorted(declarations.dependency_groups)


@dataclass(frozen=True, slots=True)
class PolicyRequirements:
    """
    Constraints and overrides from the policy, keyed by package name.

    A constraint narrows every requirement on its package; an override
    replaces the declared specifier outright.
    """
    constraints: Mapping[str, Requirement] = field(default_factory=dict)
    overrides: Mapping[str, Requirement] = field(default_factory=dict)

    @classmethod
    def parse(cls, constraints: Iterable[str] = (), overrides: Iterable[str] = ()) -> PolicyRequirements:
        """
        Raises:
            ConstraintError: If an entry is malformed or carries a marker.
        """
        return cls(_index(constraints, "constraint", merge=True), _index(overrides, "override", merge=False))

    def apply(self, requirement: Requirement) -> Requirement:
        return apply_policy_to_requirement(requirement, self.constraints, self.overrides)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "constraints": sorted(str(r) for r in self.constraints.values()),
            "overrides": sorted(str(r) for r in self.overrides.values()),
        }


def _index(lines: Iterable[str], kind: str, *, merge: bool) -> dict[str, Requirement]:
    out: dict[str, Requirement] = {}
    for line in lines:
        req = Requirement.parse(line)
        if not req.marker.is_always_true():
            raise ConstraintError(f"{kind} {line!r} may not carry a marker")
        prior = out.get(req.name)
        if prior is not None and merge:
            req = prior.with_specifier(
                prior.specifier.intersect(req.specifier),
                ",".join(t for t in (prior.specifier_text, req.specifier_text) if t))
        out[req.name] = req
    return out


def apply_policy_to_requirement(
        requirement: Requirement,
        constraints: Mapping[str, Requirement],
        overrides: Mapping[str, Requirement]) -> Requirement:
    """
    Applies policy constraints and overrides to one requirement.

    An override wins over the declared specifier and ignores constraints; a
    constraint is intersected with it. The result may be the empty range,
    which the resolver reports as a conflict.
    """
    override = overrides.get(requirement.name)
    if override is not None:
        return requirement.with_specifier(override.specifier, override.specifier_text)
    constraint = constraints.get(requirement.name)
    if constraint is not None:
        text = ",".join(t for t in (requirement.specifier_text, constraint.specifier_text) if t)
        return requirement.with_specifier(requirement.specifier.intersect(constraint.specifier), text)
    return requirement
