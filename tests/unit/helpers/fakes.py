from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pyenvsync.engine.resolution.providers import PackageMetadataProvider, StaticMetadataProvider
from pyenvsync.engine.sync.inspectors import EnvironmentInspector
from pyenvsync.engine.sync.installers import Installer
from pyenvsync.errors import MetadataFetchError, TransientFetchError
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.environment.environment_model import (
    EnvironmentState, InstalledPackage, InstallPlan, InstallReport, InterpreterInfo)
from pyenvsync.model.requirement.candidate_model import PackageCandidate
from pyenvsync.model.requirement.requirement_model import Requirement, Source

LINUX_312 = TargetEnvironment.from_key("linux-x86_64-cpython-3.12")
WINDOWS_312 = TargetEnvironment.from_key("windows-x86_64-cpython-3.12")
MACOS_312 = TargetEnvironment.from_key("macos-arm64-cpython-3.12")
LINUX_39 = TargetEnvironment.from_key("linux-x86_64-cpython-3.9")

LINUX_INTERPRETER = InterpreterInfo(
    implementation="cpython", version=parse_version("3.12.4"), os_family="linux", arch="x86_64")


def make_index(packages: Mapping[str, Mapping[str, Sequence[str]]], **requires_python: str) -> StaticMetadataProvider:
    """
    Builds a provider from `{name: {version: [requirement, ...]}}`.
    Keyword arguments map `name_version` (dots as underscores) to a
    Requires-Python string.
    """
    provider = StaticMetadataProvider()
    for name, versions in packages.items():
        for version, requires in versions.items():
            key = f"{name}_{version}".replace(".", "_").replace("-", "_")
            provider.add(PackageCandidate.create(
                name, version, requires, requires_python=requires_python.get(key)))
    return provider


class CountingProvider(PackageMetadataProvider):
    """
    Wraps a provider, counting calls and failing on demand. Requirement
    failures are keyed by `name==version`.
    """

    def __init__(
            self,
            inner: PackageMetadataProvider,
            *,
            transient_failures: Mapping[str, int] | None = None,
            requirement_failures: Mapping[str, int] | None = None,
            unavailable: Iterable[str] = ()):
        self.inner = inner
        self.calls: dict[str, int] = {}
        self.requirement_calls: dict[str, int] = {}
        self._failures = dict(transient_failures or {})
        self._requirement_failures = dict(requirement_failures or {})
        self._unavailable = frozenset(unavailable)

    def candidates_for(self, name: str) -> Sequence[PackageCandidate]:
        self.calls[name] = self.calls.get(name, 0) + 1
        remaining = self._failures.get(name, 0)
        if remaining:
            self._failures[name] = remaining - 1
            raise TransientFetchError(name, f"temporary failure fetching {name}")
        return self.inner.candidates_for(name)

    def declared_requirements(self, candidate: PackageCandidate) -> frozenset[Requirement]:
        key = f"{candidate.name}=={candidate.version}"
        self.requirement_calls[key] = self.requirement_calls.get(key, 0) + 1
        if key in self._unavailable:
            raise MetadataFetchError(candidate.name, f"metadata of {key} is corrupt")
        remaining = self._requirement_failures.get(key, 0)
        if remaining:
            self._requirement_failures[key] = remaining - 1
            raise TransientFetchError(candidate.name, f"temporary failure fetching {key}")
        return self.inner.declared_requirements(candidate)


@dataclass
class FakeEnvironment:
    """An in-memory environment the fake inspector and installer share."""
    interpreter: InterpreterInfo = LINUX_INTERPRETER
    packages: dict[str, InstalledPackage] = field(default_factory=dict)

    def install(self, name: str, version: str, source: Source | None = None) -> None:
        self.packages[name] = InstalledPackage(
            name=name, version=parse_version(version), source=source or Source.registry())

    def versions(self) -> dict[str, str]:
        return {name: str(p.version) for name, p in sorted(self.packages.items())}


class FakeInspector(EnvironmentInspector):
    def __init__(self, env: FakeEnvironment):
        self.env = env
        self.snapshots = 0

    def snapshot(self, path: Path) -> EnvironmentState:
        self.snapshots += 1
        return EnvironmentState(packages=dict(self.env.packages), interpreter=self.env.interpreter)


class FakeInstaller(Installer):
    def __init__(self, env: FakeEnvironment, *, fail: Iterable[str] = ()):
        self.env = env
        self.fail = set(fail)
        self.plans: list[InstallPlan] = []

    def apply(self, plan: InstallPlan) -> InstallReport:
        self.plans.append(plan)
        applied: list[str] = []
        failed: dict[str, str] = {}
        for name in plan.to_remove:
            self.env.packages.pop(name, None)
            applied.append(name)
        for package in (*plan.to_install, *plan.to_reinstall):
            if package.name in self.fail:
                failed[package.name] = "simulated failure"
                continue
            self.env.packages[package.name] = InstalledPackage(
                name=package.name, version=package.version, source=package.source)
            applied.append(package.name)
        return InstallReport(applied=tuple(applied), failed=failed)


PYPROJECT_TEMPLATE = """\
[project]
name = "demo"
version = "0.1.0"
dependencies = {dependencies}

[project.optional-dependencies]
{extras}

[dependency-groups]
{groups}

[tool.pyenvsync]
{tool}
"""


def write_project(
        project_dir: Path,
        dependencies: Sequence[str],
        *,
        extras: Mapping[str, Sequence[str]] | None = None,
        groups: Mapping[str, Sequence[str]] | None = None,
        tool: str = "") -> Path:
    def _list(items: Sequence[str]) -> str:
        return "[" + ", ".join(f'"{i}"' for i in items) + "]"

    text = PYPROJECT_TEMPLATE.format(
        dependencies=_list(dependencies),
        extras="\n".join(f"{k} = {_list(v)}" for k, v in (extras or {}).items()),
        groups="\n".join(f"{k} = {_list(v)}" for k, v in (groups or {}).items()),
        tool=tool)
    path = project_dir / "pyproject.toml"
    path.write_text(text, encoding="utf-8")
    return path
