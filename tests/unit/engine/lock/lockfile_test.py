from __future__ import annotations

from pathlib import Path

import pytest
import tomli

from pyenvsync.engine.lock.lockfile_codec import compute_requirement_hash, deserialize, serialize
from pyenvsync.engine.lock.lockfile_store import LockfileStore
from pyenvsync.engine.requirements.project_declarations import PolicyRequirements
from pyenvsync.engine.resolution.universal_resolver import resolve
from pyenvsync.errors import LockfileError, ResolutionInProgressError
from pyenvsync.helper.file_utils import exclusive_lock
from pyenvsync.model.lock.solution_model import LOCKFILE_FORMAT_VERSION, Lockfile
from pyenvsync.model.requirement.requirement_model import Requirement, RequirementRoot
from unit.helpers.fakes import LINUX_312, WINDOWS_312, make_index

INDEX = {
    "app": {"1.0": ['colorama>=0.4; sys_platform == "win32"', "click>=8"]},
    "colorama": {"0.4.6": []},
    "click": {"8.1.7": []},
    "pytest": {"8.2.0": []},
}


def _requirements() -> list[Requirement]:
    return [
        Requirement.parse("app"),
        Requirement.parse("pytest>=8", root=RequirementRoot.group("test")),
    ]


def _lockfile() -> Lockfile:
    envs = [LINUX_312, WINDOWS_312]
    reqs = _requirements()
    return Lockfile(
        solution=resolve(reqs, make_index(INDEX), envs),
        requirement_hash=compute_requirement_hash(reqs, None, envs))


def test_serialization_is_stable_across_round_trip():
    data = serialize(_lockfile())
    assert serialize(deserialize(data)) == data
    assert serialize(_lockfile()) == data


def test_round_trip_preserves_solution_views():
    lockfile = _lockfile()
    loaded = deserialize(serialize(lockfile))
    assert loaded.requirement_hash == lockfile.requirement_hash
    assert loaded.format_version == LOCKFILE_FORMAT_VERSION
    assert set(loaded.solution.for_environment(WINDOWS_312)) == {"app", "click", "colorama", "pytest"}
    assert set(loaded.solution.for_environment(LINUX_312)) == {"app", "click", "pytest"}
    assert [e.key for e in loaded.solution.environments] == [LINUX_312.key, WINDOWS_312.key]


def test_top_level_schema():
    mapping = tomli.loads(serialize(_lockfile()).decode("utf-8"))
    assert list(mapping) == [
        "format_version", "resolver_version", "requirement_hash", "environments", "roots", "packages"]
    assert list(mapping["packages"][0]) == ["name", "version", "marker_region", "source", "dependencies"]


def test_header_fields_come_before_tables():
    text = serialize(_lockfile()).decode("utf-8")
    positions = [text.index(marker) for marker in (
        "format_version", "resolver_version", "requirement_hash", "environments", "[[roots]]", "[[packages]]")]
    assert positions == sorted(positions)


@pytest.mark.parametrize(
    "data, match",
    [
        (b"format_version = [", "not valid TOML"),
        (b"\xff\xfe\x00", "not valid UTF-8"),
        (b"format_version = 99\nrequirement_hash = \"x\"\n", "unsupported lockfile format version"),
        (b"format_version = 1\n", "malformed"),
        (b"format_version = 1\nrequirement_hash = \"x\"\n[[packages]]\nname = \"a\"\nversion = \"not a version\"\n",
         "malformed"),
    ])
def test_corrupt_lockfiles_are_rejected(data: bytes, match: str):
    with pytest.raises(LockfileError, match=match):
        deserialize(data)


def test_requirement_hash_ignores_input_order():
    reqs = _requirements()
    first = compute_requirement_hash(reqs, None, [LINUX_312, WINDOWS_312])
    second = compute_requirement_hash(list(reversed(reqs)), None, [WINDOWS_312, LINUX_312])
    assert first == second


def test_requirement_hash_changes_with_inputs():
    reqs = _requirements()
    base = compute_requirement_hash(reqs, None, [LINUX_312])
    assert compute_requirement_hash(reqs, None, [LINUX_312, WINDOWS_312]) != base
    assert compute_requirement_hash(reqs, PolicyRequirements.parse(constraints=["click<9"]), [LINUX_312]) != base
    assert compute_requirement_hash([*reqs, Requirement.parse("click")], None, [LINUX_312]) != base


def test_store_detects_staleness(tmp_path: Path):
    store = LockfileStore(tmp_path / "pyenvsync.lock")
    lockfile = _lockfile()
    store.write(lockfile)
    assert store.exists()
    assert not store.load(lockfile.requirement_hash).stale
    assert store.load("something-else").stale
    assert not store.load().stale


def test_store_missing_lockfile_raises(tmp_path: Path):
    store = LockfileStore(tmp_path / "pyenvsync.lock")
    assert not store.exists()
    with pytest.raises(LockfileError, match="does not exist"):
        store.load()


def test_store_write_replaces_previous_content(tmp_path: Path):
    store = LockfileStore(tmp_path / "pyenvsync.lock")
    store.path.write_bytes(b"garbage")
    store.write(_lockfile())
    assert store.load().lockfile.solution == deserialize(serialize(_lockfile())).solution
    assert not list(tmp_path.glob("*.tmp"))


def test_concurrent_writer_times_out(tmp_path: Path):
    store = LockfileStore(tmp_path / "pyenvsync.lock", timeout=0)
    with exclusive_lock(store.path):
        with pytest.raises(ResolutionInProgressError):
            store.write(_lockfile())
    assert not store.exists()
