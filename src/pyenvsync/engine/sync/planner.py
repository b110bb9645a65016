from __future__ import annotations

from collections.abc import Iterable

from pyenvsync.engine.audit.audit_event_model import StageType, audit
from pyenvsync.errors import LockfileError
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.environment.environment_model import EnvironmentState, InstallPlan
from pyenvsync.model.lock.solution_model import ResolvedPackage, Solution
from pyenvsync.model.requirement.requirement_model import RUNTIME, RequirementRoot, Source, normalize_name


def match_environment(solution: Solution, environment: TargetEnvironment) -> TargetEnvironment:
    """
    The configured target that stands for a live interpreter: same OS,
    architecture, implementation, and minor version.

    Raises:
        LockfileError: If the lockfile was not resolved for it.
    """
    for candidate in solution.environments:
        if candidate.key == environment.key:
            return candidate
    minor = (environment.python_version.major, environment.python_version.minor)
    for candidate in solution.environments:
        if (candidate.os_family == environment.os_family
                and candidate.arch == environment.arch
                and candidate.python_implementation == environment.python_implementation
                and (candidate.python_version.major, candidate.python_version.minor) == minor):
            return candidate
    configured = ", ".join(e.key for e in solution.environments) or "none"
    raise LockfileError(f"lockfile does not cover {environment.key} (configured: {configured})")


def required_packages(
        solution: Solution,
        environment: TargetEnvironment,
        selection: Iterable[RequirementRoot]) -> dict[str, ResolvedPackage]:
    """
    The entries reachable from the selected roots in one environment.

    Raises:
        LockfileError: If an entry names a dependency the lockfile lacks.
    """
    facts = environment.marker_environment()
    available = solution.for_environment(environment)
    selected = set(selection)

    pending = sorted({r.name for r in solution.roots if r.root in selected and r.marker.evaluate(facts)})
    required: dict[str, ResolvedPackage] = {}
    while pending:
        name = pending.pop()
        if name in required:
            continue
        entry = available.get(name)
        if entry is None:
            raise LockfileError(f"lockfile has no entry for {name} on {environment.key}")
        required[name] = entry
        pending.extend(d for d in entry.dependencies if d not in required)
    return required


def _same_source(a: Source, b: Source) -> bool:
    return (a.kind, a.location, a.editable) == (b.kind, b.location, b.editable)


@audit(StageType.SYNC, "plan")
def diff(
        solution: Solution,
        environment_state: EnvironmentState,
        *,
        selection: Iterable[RequirementRoot] = (RUNTIME,),
        environment: TargetEnvironment | None = None,
        protected: Iterable[str] = (),
        exact: bool = True) -> InstallPlan:
    """
    Computes the minimal plan that brings an environment to the solution.

    A package is installed when it is missing or at another version,
    reinstalled when its version matches but its source does not, and
    removed when it is installed but not required, unless it is protected
    or `exact` is false. Applying the plan and diffing again gives an empty
    plan.

    Args:
        solution (Solution): The locked solution.
        environment_state (EnvironmentState): A fresh snapshot.
        selection (Iterable[RequirementRoot]): Roots to install.
        environment (TargetEnvironment | None): The configured target to
            plan for; matched from the interpreter when omitted.
        protected (Iterable[str]): Names never removed.
        exact (bool): Whether extraneous packages are removed.

    Returns:
        InstallPlan: Sorted by package name.

    Raises:
        LockfileError: If the solution does not cover the environment.
    """
    if environment is None:
        environment = match_environment(solution, environment_state.interpreter.target_environment())
    required = required_packages(solution, environment, selection)
    installed = environment_state.packages
    keep = {normalize_name(p) for p in protected}

    to_install: list[ResolvedPackage] = []
    to_reinstall: list[ResolvedPackage] = []
    for name in sorted(required):
        entry = required[name]
        current = installed.get(name)
        if current is None or current.version != entry.version:
            to_install.append(entry)
        elif not _same_source(current.source, entry.source):
            to_reinstall.append(entry)

    to_remove = []
    if exact:
        to_remove = [name for name in sorted(installed) if name not in required and name not in keep]

    return InstallPlan(to_install=tuple(to_install), to_remove=tuple(to_remove), to_reinstall=tuple(to_reinstall))
