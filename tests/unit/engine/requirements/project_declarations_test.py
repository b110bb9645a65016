from __future__ import annotations

from pathlib import Path

import pytest
from packaging.version import Version

from pyenvsync.engine.requirements.project_declarations import (
    PolicyRequirements, ProjectDeclarations, apply_policy_to_requirement, collect_requirements,
    load_project_declarations)
from pyenvsync.errors import ConstraintError
from pyenvsync.model.requirement.requirement_model import RUNTIME, Requirement, RequirementRoot, SourceKind
from unit.helpers.fakes import write_project


def _decl(**kwargs) -> ProjectDeclarations:
    doc = {
        "project": {
            "name": "demo",
            "dependencies": kwargs.get("dependencies", ["requests>=2.25,<3"]),
            "optional-dependencies": kwargs.get("extras", {"socks": ["pysocks>=1.5"], "all": ["demo[socks]"]}),
        },
        "dependency-groups": kwargs.get("groups", {
            "test": ["pytest>=8"],
            "dev": [{"include-group": "test"}, "ruff"],
        }),
    }
    return ProjectDeclarations.from_pyproject(doc)


def _names(reqs) -> list[tuple[str, str]]:
    return sorted((r.name, str(r.root)) for r in reqs)


def test_runtime_requirements_are_always_collected():
    reqs = collect_requirements(_decl(), [])
    assert _names(reqs) == [("requests", "runtime")]


def test_extras_only_when_selected():
    reqs = collect_requirements(_decl(), ["socks"])
    assert _names(reqs) == [("pysocks", "extra:socks"), ("requests", "runtime")]


def test_self_referencing_extra_expands():
    reqs = collect_requirements(_decl(), ["all"])
    assert ("pysocks", "extra:all") in _names(reqs)


def test_groups_with_include_group():
    reqs = collect_requirements(_decl(), [], ["dev"])
    assert _names(reqs) == [("pytest", "group:dev"), ("requests", "runtime"), ("ruff", "group:dev")]


def test_unknown_extra_and_group_are_rejected():
    with pytest.raises(ConstraintError):
        collect_requirements(_decl(), ["nope"])
    with pytest.raises(ConstraintError):
        collect_requirements(_decl(), [], ["nope"])


def test_group_cycle_is_rejected():
    decl = _decl(groups={"a": [{"include-group": "b"}], "b": [{"include-group": "a"}]})
    with pytest.raises(ConstraintError, match="cycle"):
        collect_requirements(decl, [], ["a"])


def test_same_package_in_two_roots_appears_once_per_root():
    decl = _decl(dependencies=["attrs>=22"], groups={"test": ["attrs>=23"]})
    reqs = collect_requirements(decl, [], ["test"])
    assert _names(reqs) == [("attrs", "group:test"), ("attrs", "runtime")]


def test_load_from_pyproject_with_path_source(tmp_path: Path):
    write_project(
        tmp_path,
        ["mylib", "requests"],
        tool='[tool.pyenvsync.sources]\nmylib = { path = "libs/mylib", editable = true }')
    decl = load_project_declarations(tmp_path)
    reqs = {r.name: r for r in collect_requirements(decl, [])}
    assert reqs["mylib"].source.kind is SourceKind.PATH
    assert reqs["mylib"].source.editable
    assert reqs["mylib"].source.location == (tmp_path / "libs/mylib").as_posix()
    assert reqs["requests"].source.is_registry


def test_constraint_intersects_and_override_replaces():
    req = Requirement.parse("urllib3>=1.21")
    policy = PolicyRequirements.parse(constraints=["urllib3<2"], overrides=[])
    constrained = policy.apply(req)
    assert Version("1.26") in constrained.specifier
    assert Version("2.0") not in constrained.specifier

    overridden = apply_policy_to_requirement(
        req, {}, PolicyRequirements.parse(overrides=["urllib3==1.0"]).overrides)
    assert overridden.specifier.single_version() == Version("1.0")


def test_conflicting_constraint_yields_empty_range():
    policy = PolicyRequirements.parse(constraints=["urllib3<1"])
    assert policy.apply(Requirement.parse("urllib3>=2")).specifier.is_empty()


def test_constraint_with_marker_is_rejected():
    with pytest.raises(ConstraintError, match="marker"):
        PolicyRequirements.parse(constraints=['urllib3<2; sys_platform == "win32"'])


def test_requirement_parse_keeps_root_and_extras():
    req = Requirement.parse("Requests[SOCKS]>=2; python_version >= '3.8'", root=RequirementRoot.extra("net"))
    assert req.name == "requests"
    assert req.extras == frozenset({"socks"})
    assert str(req.root) == "extra:net"
    assert req.root != RUNTIME


def test_requirement_parse_rejects_garbage():
    with pytest.raises(ConstraintError):
        Requirement.parse("requests >>> 2")
