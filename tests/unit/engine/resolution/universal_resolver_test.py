from __future__ import annotations

import pytest

from pyenvsync.engine.requirements.project_declarations import PolicyRequirements
from pyenvsync.engine.resolution.candidate_cache import CandidateCache
from pyenvsync.engine.resolution.marker_partition import compute_partition, extra_values
from pyenvsync.engine.resolution.universal_resolver import resolve
from pyenvsync.errors import ConflictError, ConstraintError
from pyenvsync.model.constraint.marker_model import parse_marker
from pyenvsync.model.requirement.requirement_model import Requirement, RequirementRoot
from unit.helpers.fakes import LINUX_312, LINUX_39, MACOS_312, WINDOWS_312, CountingProvider, make_index


def _reqs(*lines: str) -> list[Requirement]:
    return [Requirement.parse(line) for line in lines]


PLATFORM_INDEX = {
    "app": {"1.0": ['colorama>=0.4; sys_platform == "win32"', "click>=8"]},
    "colorama": {"0.4.6": []},
    "click": {"8.1.7": []},
}


def test_single_environment_gives_single_region_solution():
    solution = resolve(_reqs("app"), make_index(PLATFORM_INDEX), [LINUX_312])
    assert solution.is_universal
    assert {p.name for p in solution.packages} == {"app", "click"}
    assert set(solution.selected) == {"app", "click"}


def test_platform_specific_dependency_gets_a_region():
    solution = resolve(_reqs("app"), make_index(PLATFORM_INDEX), [LINUX_312, WINDOWS_312, MACOS_312])
    by_name = {p.name: p for p in solution.packages if p.name != "app"}
    assert str(by_name["click"].marker_region) == ""
    assert str(by_name["colorama"].marker_region) == 'sys_platform == "win32"'

    assert set(solution.for_environment(WINDOWS_312)) == {"app", "click", "colorama"}
    assert set(solution.for_environment(LINUX_312)) == {"app", "click"}
    assert set(solution.forks) == {LINUX_312.key, WINDOWS_312.key, MACOS_312.key}


def test_app_dependencies_differ_per_fork():
    solution = resolve(_reqs("app"), make_index(PLATFORM_INDEX), [LINUX_312, WINDOWS_312])
    apps = sorted((p for p in solution.packages if p.name == "app"), key=lambda p: len(p.dependencies))
    assert [p.dependencies for p in apps] == [("click",), ("click", "colorama")]
    assert not solution.is_universal


def test_different_versions_per_python_version_have_disjoint_regions():
    index = make_index(
        {"lib": {"1.0": [], "2.0": []}},
        lib_2_0=">=3.10")
    solution = resolve(_reqs("lib"), index, [LINUX_39, LINUX_312])
    entries = sorted(solution.packages, key=lambda p: p.version)
    assert [str(p.version) for p in entries] == ["1.0", "2.0"]
    assert str(entries[0].marker_region) == 'python_version == "3.9"'
    assert str(entries[1].marker_region) == 'python_version == "3.12"'
    for env in (LINUX_39, LINUX_312):
        matching = [p for p in entries if p.applies_to(env)]
        assert len(matching) == 1


def test_root_entries_record_roots_and_markers():
    reqs = [
        Requirement.parse("click"),
        Requirement.parse('colorama; sys_platform == "win32"', root=RequirementRoot.group("dev")),
    ]
    solution = resolve(reqs, make_index(PLATFORM_INDEX), [LINUX_312, WINDOWS_312])
    roots = {(str(r.root), r.name, str(r.marker)) for r in solution.roots}
    assert roots == {("runtime", "click", ""), ("group:dev", "colorama", 'sys_platform == "win32"')}


def test_conflict_in_one_fork_names_the_environment():
    index = make_index({
        "app": {"1.0": ['a; sys_platform == "win32"', 'b; sys_platform == "win32"']},
        "a": {"1.0": ["c>=2"]},
        "b": {"1.0": ["c<2"]},
        "c": {"1.0": [], "2.0": []},
    })
    with pytest.raises(ConflictError) as ei:
        resolve(_reqs("app"), index, [LINUX_312, WINDOWS_312])
    assert WINDOWS_312.key in str(ei.value)
    assert LINUX_312.key not in str(ei.value)


def test_impossible_root_range_fails_before_search():
    policy = PolicyRequirements.parse(constraints=["click<1"])
    with pytest.raises(ConflictError, match="impossible version range"):
        resolve(_reqs("click>=8"), make_index(PLATFORM_INDEX), [LINUX_312], policy_requirements=policy)


def test_no_environments_is_rejected():
    with pytest.raises(ConstraintError):
        resolve(_reqs("click"), make_index(PLATFORM_INDEX), [])


def test_resolution_is_deterministic():
    envs = [WINDOWS_312, LINUX_312, MACOS_312]
    first = resolve(_reqs("app"), make_index(PLATFORM_INDEX), envs)
    second = resolve(_reqs("app"), make_index(PLATFORM_INDEX), list(reversed(envs)))
    assert first == second
    assert first.to_json() == second.to_json()


def test_partition_groups_environments_that_agree_on_every_marker():
    with CandidateCache(make_index(PLATFORM_INDEX)) as cache:
        blocks = compute_partition(_reqs("app"), cache, [LINUX_312, MACOS_312, WINDOWS_312])
    assert [b.keys for b in blocks] == [
        (LINUX_312.key, MACOS_312.key),
        (WINDOWS_312.key,),
    ]


def test_partition_without_markers_is_one_block():
    with CandidateCache(make_index({"click": {"8.1.7": []}})) as cache:
        blocks = compute_partition(_reqs("click"), cache, [LINUX_312, WINDOWS_312, LINUX_39])
    assert len(blocks) == 1


def test_extra_values_of_marker():
    expr = parse_marker('extra == "Test" or (extra == "docs" and sys_platform == "linux")')
    assert extra_values(expr) == frozenset({"test", "docs"})


def test_transient_requirement_failure_is_retried():
    provider = CountingProvider(make_index(PLATFORM_INDEX), requirement_failures={"app==1.0": 1})
    solution = resolve(_reqs("app"), provider, [LINUX_312, WINDOWS_312])
    assert {p.name for p in solution.packages} == {"app", "click", "colorama"}
    assert provider.requirement_calls["app==1.0"] == 2


_SOUNDNESS_CASES = [
    {
        "index": PLATFORM_INDEX,
        "roots": ["app"],
        "envs": [LINUX_312, WINDOWS_312, MACOS_312],
    },
    {
        "index": {
            "app": {"1.0": [
                'legacy<2; python_version < "3.10"',
                'modern>=2; python_version >= "3.10"',
                "shared>=1,<3",
            ]},
            "legacy": {"1.0": [], "1.5": [], "2.0": []},
            "modern": {"1.0": [], "2.0": ["shared>=2"], "2.5": ["shared>=3"]},
            "shared": {"1.0": [], "2.0": [], "3.0": []},
        },
        "roots": ["app"],
        "envs": [LINUX_39, LINUX_312, WINDOWS_312],
    },
    {
        "index": {
            "web": {"1.0": ["db>=1", "cache<2"], "2.0": ["db>=2", 'cache>=2; os_name == "nt"']},
            "db": {"1.0": [], "2.0": ["driver>=1"], "3.0": ["driver>=5"]},
            "driver": {"1.0": [], "4.0": []},
            "cache": {"1.0": [], "2.0": []},
        },
        "roots": ["web", "cache<2; sys_platform == \"linux\""],
        "envs": [LINUX_312, WINDOWS_312],
    },
]


@pytest.mark.parametrize("row", _SOUNDNESS_CASES)
def test_every_applicable_requirement_is_satisfied_per_environment(row):
    index = make_index(row["index"])
    roots = _reqs(*row["roots"])
    solution = resolve(roots, index, row["envs"])

    for env in row["envs"]:
        facts = {**env.marker_environment(), "extra": ""}
        chosen = solution.for_environment(env)
        applicable = [r for r in roots if r.marker.evaluate(facts)]
        for package in chosen.values():
            (candidate,) = [c for c in index.candidates_for(package.name) if c.version == package.version]
            applicable.extend(r for r in candidate.declared_requirements if r.marker.evaluate(facts))
        for req in applicable:
            assert req.name in chosen, f"{req} unmet on {env.key}"
            assert req.specifier.contains(chosen[req.name].version), f"{req} violated on {env.key}"
