from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from pyenvsync.errors import ConstraintError
from pyenvsync.model.environment.environment_model import InstallPlan, InstallReport
from pyenvsync.model.lock.solution_model import ResolvedPackage
from pyenvsync.model.requirement.requirement_model import DEFAULT_INDEX, SourceKind


class Installer(ABC):
    """
    Applies an install plan. Implementations report partial failure in the
    returned `InstallReport` rather than raising part way through.
    """

    @abstractmethod
    def apply(self, plan: InstallPlan) -> InstallReport:
        raise NotImplementedError


def pip_argument(package: ResolvedPackage) -> list[str]:
    """The pip arguments that install exactly this locked entry."""
    source = package.source
    match source.kind:
        case SourceKind.PATH:
            return ["-e", source.location] if source.editable else [source.location]
        case SourceKind.URL:
            return [f"{package.name} @ {source.location}"]
        case _:
            return [f"{package.name}=={package.version}"]


class PipInstaller(Installer):
    """
    Installs through `python -m pip` of the target environment's
    interpreter, one package at a time and without dependency resolution,
    since the plan is already complete.
    """

    def __init__(self, python: str | Path, *, index_url: str | None = None):
        self._python = str(python)
        self._index_url = index_url

    @classmethod
    def for_environment(cls, env_root: Path, *, index_url: str | None = None) -> PipInstaller:
        """
        Uses the environment's own interpreter.

        Raises:
            ConstraintError: If `env_root` holds no interpreter.
        """
        for candidate in (env_root / "bin" / "python", env_root / "Scripts" / "python.exe"):
            if candidate.is_file():
                return cls(candidate, index_url=index_url)
        raise ConstraintError(f"{env_root} is not a Python environment: no interpreter found")

    def _index_for(self, package: ResolvedPackage) -> str | None:
        if package.source.kind is not SourceKind.REGISTRY:
            return None
        if package.source.location != DEFAULT_INDEX:
            return package.source.location
        return self._index_url

    def _run(self, args: Sequence[str]) -> tuple[int, str]:
        proc = subprocess.run(  # noqa: S603
            [self._python, "-m", "pip", *args],
            capture_output=True,
            text=True,
            check=False)
        return proc.returncode, (proc.stderr or proc.stdout).strip()

    def apply(self, plan: InstallPlan) -> InstallReport:
        applied: list[str] = []
        failed: dict[str, str] = {}

        for name in plan.to_remove:
            code, output = self._run(["uninstall", "--yes", name])
            if code == 0:
                applied.append(name)
            else:
                failed[name] = output.splitlines()[-1] if output else f"pip exited with {code}"

        for package in (*plan.to_install, *plan.to_reinstall):
            args = ["install", "--no-deps"]
            if package.name in plan.reinstall_names:
                args.append("--force-reinstall")
            index = self._index_for(package)
            if index:
                args += ["--index-url", index]
            code, output = self._run([*args, *pip_argument(package)])
            if code == 0:
                applied.append(package.name)
            else:
                failed[package.name] = output.splitlines()[-1] if output else f"pip exited with {code}"

        return InstallReport(applied=tuple(applied), failed=failed)
