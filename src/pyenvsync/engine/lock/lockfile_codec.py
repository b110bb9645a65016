from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import tomli

from pyenvsync.engine.requirements.project_declarations import PolicyRequirements
from pyenvsync.errors import ConstraintError, LockfileError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.helper.toml_utils import dump_toml_to_str, load_toml_bytes
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.lock.solution_model import LOCKFILE_FORMAT_VERSION, Lockfile, Solution
from pyenvsync.model.requirement.requirement_model import Requirement


@dataclass(frozen=True, slots=True)
class ResolutionInputs(MultiformatModelMixin):
    """Everything a solution depends on besides the index itself."""
    requirements: tuple[Requirement, ...]
    policy_requirements: PolicyRequirements
    environments: tuple[TargetEnvironment, ...]

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "requirements": [r.to_mapping() for r in sorted(set(self.requirements), key=Requirement.sort_key)],
            "policy": self.policy_requirements.to_mapping(),
            "environments": sorted(e.key for e in self.environments),
        }


def compute_requirement_hash(
        requirements: Iterable[Requirement],
        policy_requirements: PolicyRequirements | None,
        environments: Iterable[TargetEnvironment]) -> str:
    """
    SHA-256 over the canonical root requirements, constraints, overrides and
    target environments. Order of the inputs does not matter.
    """
    return ResolutionInputs(
        tuple(requirements),
        policy_requirements or PolicyRequirements(),
        tuple(environments)).mapping_hash()


def lockfile_to_mapping(lockfile: Lockfile) -> dict[str, Any]:
    solution = lockfile.solution.to_mapping()
    # key order is the on-disk layout
    return {
        "format_version": lockfile.format_version,
        "resolver_version": lockfile.resolver_version,
        "requirement_hash": lockfile.requirement_hash,
        "environments": solution["environments"],
        "roots": solution["roots"],
        "packages": solution["packages"],
    }


def lockfile_from_mapping(mapping: Mapping[str, Any]) -> Lockfile:
    """
    Raises:
        LockfileError: If the format version is unsupported or an entry is
            malformed.
    """
    version = mapping.get("format_version")
    if version != LOCKFILE_FORMAT_VERSION:
        raise LockfileError(
            f"unsupported lockfile format version {version!r} (expected {LOCKFILE_FORMAT_VERSION})")
    try:
        solution = Solution.from_mapping(mapping)
        return Lockfile(
            solution=solution,
            requirement_hash=str(mapping["requirement_hash"]),
            format_version=version,
            resolver_version=str(mapping.get("resolver_version", "")))
    except (KeyError, TypeError, ValueError, ConstraintError) as e:
        raise LockfileError(f"malformed lockfile: {e}") from e


def serialize(lockfile: Lockfile) -> bytes:
    """Renders a lockfile as UTF-8 TOML. Equal lockfiles give identical bytes."""
    return dump_toml_to_str(lockfile_to_mapping(lockfile)).encode("utf-8")


def deserialize(data: bytes) -> Lockfile:
    """
    Raises:
        LockfileError: If the bytes are not a valid lockfile of the
            supported format version.
    """
    try:
        mapping = load_toml_bytes(data)
    except UnicodeDecodeError as e:
        raise LockfileError(f"lockfile is not valid UTF-8: {e}") from e
    except tomli.TOMLDecodeError as e:
        raise LockfileError(f"lockfile is not valid TOML: {e}") from e
    return lockfile_from_mapping(mapping)
