from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from pyenvsync.engine.config.config_loader import env_fragment, load_user_fragment, resolve_policy
from pyenvsync.model.config.policy_model import PreReleasePolicy, ResolvedPolicy, SyncMode
from pyenvsync.model.config.provenance_model import OperationKind, SourceKind
from unit.helpers.fakes import LINUX_312, WINDOWS_312, write_project


def _resolve(project_dir: Path, *, environ: dict[str, str] | None = None, user: str | None = None,
             overrides: dict[str, Any] | None = None) -> ResolvedPolicy:
    user_path = project_dir / "user.toml"
    if user is not None:
        user_path.write_text(user, encoding="utf-8")
    return resolve_policy(project_dir, overrides=overrides, environ=environ or {}, user_config=user_path)


def test_defaults_without_any_configuration(tmp_path: Path):
    policy = _resolve(tmp_path)
    assert policy.index_url == "https://pypi.org/simple"
    assert policy.mode is SyncMode.LOCKED
    assert policy.prerelease is PreReleasePolicy.IF_NECESSARY
    assert policy.protected_packages == ["pip"]
    assert policy.environments == []
    assert {e.operation for e in policy.provenance} == {OperationKind.INIT}


def test_precedence_of_scalars_and_concatenation_of_lists(tmp_path: Path):
    write_project(tmp_path, [], tool='mode = "frozen"\nconstraints = ["b<3"]\ntie-break = "prefer-local"')
    policy = _resolve(
        tmp_path,
        user='tie_break = "prefer-registry"\nconstraints = ["a<2"]\nlock_timeout = 30',
        environ={"PYENVSYNC_CONSTRAINTS": "c<4, d<5", "PYENVSYNC_PRERELEASE": "allow"},
        overrides={"lock_timeout": 2})

    assert policy.tie_break == "prefer-local"
    assert policy.mode is SyncMode.FROZEN
    assert policy.prerelease is PreReleasePolicy.ALLOW
    assert policy.lock_timeout == 2.0
    assert policy.constraints == ["a<2", "b<3", "c<4", "d<5"]


def test_fragment_can_replace_a_list(tmp_path: Path):
    write_project(tmp_path, [], tool='constraints = ["x<1"]\nreplace = ["constraints"]')
    policy = _resolve(tmp_path, user='constraints = ["a<2"]')
    assert policy.constraints == ["x<1"]
    assert policy.provenance_for("constraints")[-1].operation is OperationKind.REPLACE


def test_duplicate_list_entries_are_dropped(tmp_path: Path):
    policy = _resolve(tmp_path, user='protected_packages = ["pip", "setuptools"]')
    assert policy.protected_packages == ["pip", "setuptools"]


def test_provenance_records_each_source(tmp_path: Path):
    write_project(tmp_path, [], tool='tie_break = "prefer-local"')
    policy = _resolve(tmp_path, environ={"PYENVSYNC_TIE_BREAK": "prefer-registry"})
    events = policy.provenance_for("tie_break")
    assert [e.source for e in events] == [SourceKind.DEFAULT, SourceKind.PROJECT, SourceKind.ENV]
    assert events[1].details["path"] == (tmp_path / "pyproject.toml").as_posix()
    assert policy.tie_break == "prefer-registry"


@pytest.mark.parametrize(
    "raw, expect",
    [("1", True), ("yes", True), ("On", True), ("0", False), ("false", False), ("", False)])
def test_boolean_environment_values(tmp_path: Path, raw: str, expect: bool):
    assert _resolve(tmp_path, environ={"PYENVSYNC_EXACT": raw}).exact is expect


@pytest.mark.parametrize(
    "kwargs, match",
    [
        ({"environ": {"PYENVSYNC_EXACT": "maybe"}}, "expected a boolean"),
        ({"environ": {"PYENVSYNC_FETCH_RETRIES": "many"}}, "invalid value"),
        ({"environ": {"PYENVSYNC_MODE": "sometimes"}}, "invalid value"),
        ({"user": "colour = \"blue\""}, "unknown configuration keys: colour"),
        ({"overrides": {"replace": ["nonsense"]}}, "unknown configuration keys: nonsense"),
    ])
def test_bad_values_are_rejected(tmp_path: Path, kwargs: dict[str, Any], match: str):
    with pytest.raises(ValueError, match=match):
        _resolve(tmp_path, **kwargs)


def test_sources_table_is_not_policy(tmp_path: Path):
    write_project(tmp_path, ["mylib"], tool='exact = false\n[tool.pyenvsync.sources]\nmylib = { path = "libs/mylib" }')
    policy = _resolve(tmp_path)
    assert policy.exact is False


def test_user_file_may_use_a_tool_table(tmp_path: Path):
    path = tmp_path / "user.toml"
    path.write_text('[tool.pyenvsync]\nindex_url = "https://mirror.example/simple"\n', encoding="utf-8")
    fragment, source = load_user_fragment(path)
    assert fragment == {"index_url": "https://mirror.example/simple"}
    assert source == path


def test_env_fragment_reads_only_known_prefixed_variables():
    fragment = env_fragment({
        "PYENVSYNC_INDEX_URL": "https://mirror.example/simple",
        "PYENVSYNC_REPLACE": "constraints",
        "PYENVSYNC_UNKNOWN": "x",
        "INDEX_URL": "y",
    })
    assert fragment == {"index_url": "https://mirror.example/simple", "replace": "constraints"}


def test_environments_are_parsed_into_targets(tmp_path: Path):
    policy = _resolve(tmp_path, overrides={"environments": [WINDOWS_312.key, LINUX_312.key, LINUX_312.key]})
    assert policy.target_environments == (LINUX_312, WINDOWS_312)


def test_policy_round_trips_through_mapping(tmp_path: Path):
    policy = _resolve(tmp_path, overrides={"constraints": ["a<2"], "mode": "frozen"})
    assert ResolvedPolicy.from_mapping(policy.to_mapping()).to_mapping() == policy.to_mapping()
