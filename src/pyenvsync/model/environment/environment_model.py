from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from packaging.version import Version

from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.lock.solution_model import ResolvedPackage
from pyenvsync.model.requirement.requirement_model import Source


@dataclass(frozen=True, kw_only=True, slots=True)
class InterpreterInfo(MultiformatModelMixin):
    """
    The interpreter that owns an environment.

    Attributes:
        implementation (str): cpython, pypy, ...
        version (Version): The full interpreter version.
        os_family (str): linux, macos, or windows.
        arch (str): The machine architecture.
    """
    implementation: str
    version: Version
    os_family: str
    arch: str

    def target_environment(self) -> TargetEnvironment:
        return TargetEnvironment(
            os_family=self.os_family,
            arch=self.arch,
            python_implementation=self.implementation,
            python_version=self.version)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "implementation": self.implementation,
            "version": str(self.version),
            "os_family": self.os_family,
            "arch": self.arch,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> InterpreterInfo:
        return cls(
            implementation=mapping["implementation"],
            version=parse_version(mapping["version"]),
            os_family=mapping["os_family"],
            arch=mapping["arch"])


@dataclass(frozen=True, kw_only=True, slots=True)
class InstalledPackage:
    name: str
    version: Version
    source: Source = field(default_factory=Source.registry)


@dataclass(frozen=True, kw_only=True, slots=True)
class EnvironmentState:
    """
    A side-effect-free snapshot of a live environment. Never cached; a new
    one is taken for every synchronization.
    """
    packages: Mapping[str, InstalledPackage]
    interpreter: InterpreterInfo

    @property
    def installed(self) -> dict[str, Version]:
        return {name: pkg.version for name, pkg in self.packages.items()}


@dataclass(frozen=True, kw_only=True, slots=True)
class InstallPlan(MultiformatModelMixin):
    """
    The minimal difference between a solution and an environment. Derived
    data only; it is recomputed on every run and never persisted.

    Attributes:
        to_install (tuple[ResolvedPackage, ...]): Absent, or present at the
            wrong version.
        to_remove (tuple[str, ...]): Installed, not in the solution, and not
            protected.
        to_reinstall (tuple[ResolvedPackage, ...]): Right version, but the
            provenance differs.
    """
    to_install: tuple[ResolvedPackage, ...] = ()
    to_remove: tuple[str, ...] = ()
    to_reinstall: tuple[ResolvedPackage, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.to_install or self.to_remove or self.to_reinstall)

    @property
    def reinstall_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.to_reinstall)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "to_install": [f"{p.name}=={p.version}" for p in self.to_install],
            "to_remove": list(self.to_remove),
            "to_reinstall": [f"{p.name}=={p.version}" for p in self.to_reinstall],
        }


@dataclass(frozen=True, kw_only=True, slots=True)
class InstallReport:
    """
    What an installer did with a plan. Partial application is reported, not
    hidden: `failed` maps each failed package to its reason.
    """
    applied: tuple[str, ...] = ()
    failed: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed
