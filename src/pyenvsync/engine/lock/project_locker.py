from __future__ import annotations

from dataclasses import replace

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, LevelType, StageType, audit, record
from pyenvsync.engine.lock.lockfile_codec import compute_requirement_hash
from pyenvsync.engine.lock.lockfile_store import LockfileStore
from pyenvsync.engine.requirements.project_declarations import (
    PolicyRequirements, ProjectDeclarations, all_roots, collect_requirements)
from pyenvsync.engine.resolution.cancellation import CancellationToken
from pyenvsync.engine.resolution.providers import PackageMetadataProvider
from pyenvsync.engine.resolution.solver import SolverOptions
from pyenvsync.engine.resolution.tie_break_registry import load_tie_break
from pyenvsync.engine.resolution.universal_resolver import resolve
from pyenvsync.engine.sync.inspectors import current_interpreter
from pyenvsync.errors import LockfileError
from pyenvsync.model.config.policy_model import ResolvedPolicy, SyncMode
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.environment.environment_model import InterpreterInfo
from pyenvsync.model.lock.solution_model import Lockfile
from pyenvsync.model.requirement.requirement_model import Requirement


def target_environments(
        policy: ResolvedPolicy,
        interpreter: InterpreterInfo | None = None) -> tuple[TargetEnvironment, ...]:
    """
    The configured targets, or the current interpreter when none are
    configured. `python_version` replaces the interpreter's version in the
    latter case.
    """
    configured = policy.target_environments
    if configured:
        return configured
    env = (interpreter or current_interpreter()).target_environment()
    if policy.python_version:
        env = replace(env, python_version=parse_version(policy.python_version))
    return (env,)


class ProjectLocker:
    """
    Produces the lockfile of one project: every root (runtime, each extra,
    each dependency group) resolved together for every target environment.

    `current` is how the rest of the engine obtains a lockfile; it applies
    the sync mode's rules on missing, corrupt, and stale lockfiles.
    """

    def __init__(
            self,
            declarations: ProjectDeclarations,
            policy: ResolvedPolicy,
            provider: PackageMetadataProvider,
            store: LockfileStore,
            *,
            interpreter: InterpreterInfo | None = None,
            token: CancellationToken | None = None):
        self.declarations = declarations
        self.policy = policy
        self.provider = provider
        self.store = store
        self.token = token or CancellationToken()
        self.environments = target_environments(policy, interpreter)
        self.policy_requirements = PolicyRequirements.parse(policy.constraints, policy.overrides)
        extras, groups = all_roots(declarations)
        self.requirements: frozenset[Requirement] = collect_requirements(declarations, extras, groups)

    @property
    def requirement_hash(self) -> str:
        return compute_requirement_hash(self.requirements, self.policy_requirements, self.environments)

    def solver_options(self) -> SolverOptions:
        return SolverOptions(
            prerelease=self.policy.prerelease,
            max_iterations=self.policy.max_iterations,
            tie_break=load_tie_break(self.policy.tie_break))

    @audit(StageType.LOCK, "lock")
    def lock(self) -> Lockfile:
        """
        Resolves and writes the lockfile.

        Raises:
            ConflictError: If no solution exists; the previous lockfile is
                left untouched.
            ResolutionInProgressError: If another writer holds the lock.
        """
        solution = resolve(
            self.requirements,
            self.provider,
            self.environments,
            policy_requirements=self.policy_requirements,
            options=self.solver_options(),
            token=self.token,
            workers=self.policy.fetch_workers,
            retries=self.policy.fetch_retries)
        lockfile = Lockfile(solution=solution, requirement_hash=self.requirement_hash)
        self.store.write(lockfile)
        return lockfile

    @audit(StageType.LOCK, "current")
    def current(self, mode: SyncMode | None = None) -> Lockfile:
        """
        The lockfile to synchronize from.

        In LOCKED mode a missing, corrupt, or stale lockfile is re-resolved
        and rewritten. In FROZEN mode it is an error instead.

        Raises:
            LockfileError: In FROZEN mode, if the lockfile cannot be used.
        """
        mode = mode or self.policy.mode
        try:
            loaded = self.store.load(self.requirement_hash)
        except LockfileError as e:
            if mode is SyncMode.FROZEN:
                raise
            record(AuditEvent.make(
                StageType.LOCK,
                EventType.ACTION,
                LevelType.WARN,
                substage="current",
                message=f"Re-resolving: {e}"))
            return self.lock()

        if not loaded.stale:
            return loaded.lockfile
        if mode is SyncMode.FROZEN:
            raise LockfileError(
                f"lockfile {self.store.path} is out of date with the project requirements; "
                "run lock or sync without frozen mode")
        record(AuditEvent.make(
            StageType.LOCK,
            EventType.ACTION,
            substage="current",
            message="Re-resolving: lockfile is stale"))
        return self.lock()
