from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from pyenvsync.engine.config.config_loader import resolve_policy
from pyenvsync.engine.lock.lockfile_store import LockfileStore
from pyenvsync.engine.lock.project_locker import ProjectLocker
from pyenvsync.engine.requirements.project_declarations import load_project_declarations
from pyenvsync.engine.sync.planner import diff, match_environment
from pyenvsync.engine.sync.synchronizer import Synchronizer
from pyenvsync.errors import ConstraintError, EnvironmentLockedError, LockfileError, SyncError
from pyenvsync.helper.file_utils import exclusive_lock, lock_path_for
from pyenvsync.model.config.policy_model import SyncMode
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.environment.environment_model import EnvironmentState, InterpreterInfo
from pyenvsync.model.requirement.requirement_model import RUNTIME, RequirementRoot, Source
from unit.helpers.fakes import FakeEnvironment, FakeInspector, FakeInstaller, LINUX_312, make_index, write_project

INDEX = make_index({
    "app": {"1.0": ["click>=8"], "2.0": ["click>=8", "rich"]},
    "click": {"8.0.0": [], "8.1.7": []},
    "rich": {"13.7": []},
    "pytest": {"8.2.0": ["pluggy"]},
    "pluggy": {"1.5.0": []},
    "pysocks": {"1.7.1": []},
})

TOOL = 'environments = ["linux-x86_64-cpython-3.12"]'


def _project(tmp_path: Path, dependencies=("app<2",)) -> Path:
    write_project(
        tmp_path,
        list(dependencies),
        extras={"socks": ["pysocks"]},
        groups={"test": ["pytest>=8"]},
        tool=TOOL)
    return tmp_path


def _locker(project_dir: Path, **overrides: Any) -> ProjectLocker:
    policy = resolve_policy(project_dir, overrides=overrides, environ={}, user_config=project_dir / "missing.toml")
    return ProjectLocker(
        load_project_declarations(project_dir),
        policy,
        INDEX,
        LockfileStore(project_dir / policy.lockfile))


def _sync(tmp_path: Path, env: FakeEnvironment, *, fail=(), **overrides: Any):
    installer = FakeInstaller(env, fail=fail)
    synchronizer = Synchronizer(_locker(tmp_path, **overrides), FakeInspector(env), installer)
    return synchronizer, installer


def _venv(tmp_path: Path) -> Path:
    path = tmp_path / "venv"
    path.mkdir(exist_ok=True)
    return path


def test_sync_installs_runtime_and_removes_extraneous(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    env.install("pip", "24.0")
    env.install("leftover", "1.0")
    synchronizer, installer = _sync(tmp_path, env)

    report = synchronizer.sync(_venv(tmp_path))

    assert report.ok
    assert env.versions() == {"app": "1.0", "click": "8.1.7", "pip": "24.0"}
    plan = installer.plans[0]
    assert [p.name for p in plan.to_install] == ["app", "click"]
    assert plan.to_remove == ("leftover",)


def test_second_sync_is_a_no_op(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    synchronizer, installer = _sync(tmp_path, env)
    synchronizer.sync(_venv(tmp_path))

    report = synchronizer.sync(_venv(tmp_path))
    assert report.applied == ()
    assert len(installer.plans) == 1
    assert synchronizer.plan(_venv(tmp_path)).is_empty


def test_groups_and_extras_are_installed_only_when_selected(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    synchronizer, _ = _sync(tmp_path, env)

    synchronizer.sync(_venv(tmp_path), groups=["test"], extras=["socks"])
    assert set(env.versions()) == {"app", "click", "pytest", "pluggy", "pysocks"}

    synchronizer.sync(_venv(tmp_path))
    assert set(env.versions()) == {"app", "click"}


def test_unknown_selection_is_rejected(tmp_path: Path):
    _project(tmp_path)
    synchronizer, _ = _sync(tmp_path, FakeEnvironment())
    with pytest.raises(ConstraintError, match="extra"):
        synchronizer.sync(_venv(tmp_path), extras=["nope"])
    with pytest.raises(ConstraintError, match="group"):
        synchronizer.sync(_venv(tmp_path), groups=["nope"])


def test_frozen_mode_requires_a_lockfile(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    synchronizer, installer = _sync(tmp_path, env, mode="frozen")
    with pytest.raises(LockfileError, match="does not exist"):
        synchronizer.sync(_venv(tmp_path))
    assert installer.plans == []
    assert env.versions() == {}


def test_locked_mode_creates_missing_lockfile(tmp_path: Path):
    _project(tmp_path)
    synchronizer, _ = _sync(tmp_path, FakeEnvironment())
    synchronizer.sync(_venv(tmp_path))
    assert (tmp_path / "pyenvsync.lock").is_file()


def test_stale_lockfile_is_refused_when_frozen_and_refreshed_when_locked(tmp_path: Path):
    _project(tmp_path)
    _locker(tmp_path).lock()
    _project(tmp_path, dependencies=("app",))

    env = FakeEnvironment()
    frozen, _ = _sync(tmp_path, env)
    with pytest.raises(LockfileError, match="out of date"):
        frozen.sync(_venv(tmp_path), mode=SyncMode.FROZEN)

    locked, _ = _sync(tmp_path, env)
    locked.sync(_venv(tmp_path), mode=SyncMode.LOCKED)
    assert env.versions() == {"app": "2.0", "click": "8.1.7", "rich": "13.7"}
    assert not _locker(tmp_path).store.load(_locker(tmp_path).requirement_hash).stale


def test_corrupt_lockfile_is_re_resolved_in_locked_mode(tmp_path: Path):
    _project(tmp_path)
    (tmp_path / "pyenvsync.lock").write_text("format_version = [", encoding="utf-8")
    env = FakeEnvironment()
    synchronizer, _ = _sync(tmp_path, env)
    synchronizer.sync(_venv(tmp_path))
    assert env.versions() == {"app": "1.0", "click": "8.1.7"}


def test_partial_failure_is_reported(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    synchronizer, _ = _sync(tmp_path, env, fail=["click"])
    with pytest.raises(SyncError) as ei:
        synchronizer.sync(_venv(tmp_path))
    assert ei.value.report.failed == {"click": "simulated failure"}
    assert "app" in ei.value.report.applied
    assert "click (simulated failure)" in str(ei.value)


def test_non_exact_sync_keeps_extraneous_packages(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    env.install("leftover", "1.0")
    synchronizer, installer = _sync(tmp_path, env, exact=False)
    synchronizer.sync(_venv(tmp_path))
    assert "leftover" in env.versions()
    assert installer.plans[0].to_remove == ()


def test_protected_packages_are_configurable(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    env.install("pip", "24.0")
    env.install("setuptools", "70.0")
    synchronizer, _ = _sync(tmp_path, env, protected_packages=["setuptools"], replace=["protected_packages"])
    synchronizer.sync(_venv(tmp_path))
    assert "setuptools" in env.versions()
    assert "pip" not in env.versions()


@pytest.mark.parametrize(
    "installed, expect",
    [
        ({"click": ("8.0.0", None)}, {"install": ["app", "click"], "reinstall": []}),
        ({"click": ("8.1.7", Source.path("/src/click"))}, {"install": ["app"], "reinstall": ["click"]}),
        ({"click": ("8.1.7", None), "app": ("1.0", None)}, {"install": [], "reinstall": []}),
    ])
def test_diff_distinguishes_install_and_reinstall(tmp_path: Path, installed, expect):
    _project(tmp_path)
    solution = _locker(tmp_path).lock().solution
    env = FakeEnvironment()
    for name, (version, source) in installed.items():
        env.install(name, version, source)
    plan = diff(solution, FakeInspector(env).snapshot(tmp_path), selection=(RUNTIME,))
    assert [p.name for p in plan.to_install] == expect["install"]
    assert [p.name for p in plan.to_reinstall] == expect["reinstall"]


def test_diff_rejects_environment_outside_the_lockfile(tmp_path: Path):
    _project(tmp_path)
    solution = _locker(tmp_path).lock().solution
    windows = InterpreterInfo(
        implementation="cpython", version=parse_version("3.12.1"), os_family="windows", arch="x86_64")
    with pytest.raises(LockfileError, match="does not cover"):
        diff(solution, EnvironmentState(packages={}, interpreter=windows))


def test_interpreter_matches_configured_minor_version(tmp_path: Path):
    _project(tmp_path)
    solution = _locker(tmp_path).lock().solution
    env = FakeEnvironment().interpreter.target_environment()
    assert match_environment(solution, env) == LINUX_312


def test_root_selection_comes_from_lockfile_roots(tmp_path: Path):
    _project(tmp_path)
    lockfile = _locker(tmp_path).lock()
    roots = {(str(r.root), r.name) for r in lockfile.solution.roots}
    assert roots == {("runtime", "app"), ("extra:socks", "pysocks"), ("group:test", "pytest")}
    plan = diff(
        lockfile.solution,
        FakeInspector(FakeEnvironment()).snapshot(tmp_path),
        selection=(RequirementRoot.group("test"),))
    assert [p.name for p in plan.to_install] == ["pluggy", "pytest"]


def test_environment_lock_path_does_not_depend_on_existence(tmp_path: Path):
    venv = tmp_path / "venv"
    before = lock_path_for(venv)
    venv.mkdir()
    assert lock_path_for(venv) == before == tmp_path / "venv.lock"


def test_concurrent_sync_of_one_environment_is_refused(tmp_path: Path):
    _project(tmp_path)
    env = FakeEnvironment()
    synchronizer, installer = _sync(tmp_path, env, lock_timeout=0)
    venv = tmp_path / "venv"

    with exclusive_lock(venv):
        venv.mkdir()
        with pytest.raises(EnvironmentLockedError):
            synchronizer.sync(venv)
    assert installer.plans == []

    assert synchronizer.sync(venv).ok
    assert env.versions() == {"app": "1.0", "click": "8.1.7"}
