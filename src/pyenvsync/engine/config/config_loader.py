from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from appdirs import user_config_dir

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, StageType, audit, record
from pyenvsync.helper.toml_utils import load_toml_file
from pyenvsync.model.config.policy_model import LIST_FIELDS, SCALAR_FIELDS, ResolvedPolicy
from pyenvsync.model.config.provenance_model import SourceKind

APP_NAME = "pyenvsync"
USER_CONFIG_FILE_NAME = "pyenvsync.toml"
PROJECT_FILE_NAME = "pyproject.toml"
ENV_PREFIX = "PYENVSYNC_"

# Keys of [tool.pyenvsync] that describe requirements rather than policy.
_PROJECT_NON_POLICY_KEYS = frozenset({"sources"})


def user_config_path() -> Path:
    return Path(user_config_dir(APP_NAME)) / USER_CONFIG_FILE_NAME


def default_fragment() -> dict[str, Any]:
    return ResolvedPolicy().to_mapping()


def load_user_fragment(path: Path | None = None) -> tuple[dict[str, Any], Path]:
    """
    Reads the user-global config file. A missing file is an empty fragment.

    The file holds policy keys at the top level; a `[tool.pyenvsync]` table
    is accepted too, so a pyproject-style file can be shared.
    """
    path = path or user_config_path()
    if not path.is_file():
        return {}, path
    doc = load_toml_file(path)
    table = doc.get("tool", {}).get(APP_NAME) if isinstance(doc.get("tool"), Mapping) else None
    return dict(table if table is not None else doc), path


def load_project_fragment(project_dir: Path) -> tuple[dict[str, Any], Path]:
    """
    Reads `[tool.pyenvsync]` from the project's pyproject.toml, leaving out
    the requirement-source table.
    """
    path = project_dir / PROJECT_FILE_NAME
    if not path.is_file():
        return {}, path
    doc = load_toml_file(path)
    table = doc.get("tool", {}).get(APP_NAME, {})
    return {k: v for k, v in table.items() if k not in _PROJECT_NON_POLICY_KEYS}, path


def env_fragment(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """
    Collects `PYENVSYNC_<KEY>` variables. List values are separated by
    commas or whitespace; `PYENVSYNC_REPLACE` names list keys to replace.
    """
    environ = os.environ if environ is None else environ
    fragment: dict[str, Any] = {}
    for key in (*SCALAR_FIELDS, *LIST_FIELDS, "replace"):
        var = f"{ENV_PREFIX}{key.upper()}"
        if var in environ:
            fragment[key] = environ[var]
    return fragment


@audit(StageType.CONFIG, substage="resolve_policy")
def resolve_policy(
        project_dir: Path,
        *,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        user_config: Path | None = None) -> ResolvedPolicy:
    """
    Merges every configuration fragment into one policy.

    Precedence, lowest first: built-in defaults, the user config file, the
    project's `[tool.pyenvsync]` table, `PYENVSYNC_*` environment
    variables, and `overrides` given by the caller.

    Args:
        project_dir (Path): The directory holding pyproject.toml.
        overrides (Mapping[str, Any] | None): Call-time settings.
        environ (Mapping[str, str] | None): Environment variables; defaults
            to `os.environ`.
        user_config (Path | None): The user config file; defaults to the
            platform config directory.

    Returns:
        ResolvedPolicy: The merged policy, with provenance for every key.

    Raises:
        ValueError: If any fragment has an unknown key or a bad value.
    """
    policy = ResolvedPolicy(protected_packages=[])
    policy.merge_from_mapping(default_fragment(), source=SourceKind.DEFAULT)

    user, user_path = load_user_fragment(user_config)
    policy.merge_from_mapping(user, source=SourceKind.USER, details={"path": user_path.as_posix()})

    project, project_path = load_project_fragment(project_dir)
    policy.merge_from_mapping(project, source=SourceKind.PROJECT, details={"path": project_path.as_posix()})

    policy.merge_from_mapping(env_fragment(environ), source=SourceKind.ENV)
    policy.merge_from_mapping(overrides, source=SourceKind.CALL)

    record(AuditEvent.make(
        StageType.CONFIG,
        EventType.INPUT,
        message="Resolved policy",
        payload=policy.to_mapping()))
    return policy
