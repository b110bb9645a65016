from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, LevelType, StageType, audit, record
from pyenvsync.engine.lock.project_locker import ProjectLocker
from pyenvsync.engine.sync.inspectors import EnvironmentInspector
from pyenvsync.engine.sync.installers import Installer
from pyenvsync.engine.sync.planner import diff
from pyenvsync.errors import ConstraintError, EnvironmentLockedError, SyncError
from pyenvsync.helper.file_utils import Timeout, exclusive_lock
from pyenvsync.model.config.policy_model import SyncMode
from pyenvsync.model.environment.environment_model import InstallPlan, InstallReport
from pyenvsync.model.requirement.requirement_model import RUNTIME, RequirementRoot, normalize_name


class Synchronizer:
    """
    Brings an environment to exactly the locked solution for the selected
    roots.

    Planning and applying happen under an exclusive lock on the environment
    root, so two synchronizations of one environment never interleave. The
    lock is released on every exit path.
    """

    def __init__(self, locker: ProjectLocker, inspector: EnvironmentInspector, installer: Installer):
        self._locker = locker
        self._inspector = inspector
        self._installer = installer

    @property
    def policy(self):
        return self._locker.policy

    def selection(self, extras: Iterable[str] = (), groups: Iterable[str] = ()) -> tuple[RequirementRoot, ...]:
        """
        Raises:
            ConstraintError: If an extra or group is not declared.
        """
        decl = self._locker.declarations
        roots = [RUNTIME]
        for extra in sorted({normalize_name(e) for e in extras}):
            if extra not in decl.optional_dependencies:
                raise ConstraintError(f"unknown extra {extra!r}")
            roots.append(RequirementRoot.extra(extra))
        for group in sorted({normalize_name(g) for g in groups}):
            if group not in decl.dependency_groups:
                raise ConstraintError(f"unknown dependency group {group!r}")
            roots.append(RequirementRoot.group(group))
        return tuple(roots)

    def plan(
            self,
            env_path: Path,
            *,
            extras: Iterable[str] = (),
            groups: Iterable[str] = (),
            mode: SyncMode | None = None) -> InstallPlan:
        """Computes the plan without applying it."""
        selection = self.selection(extras, groups)
        lockfile = self._locker.current(mode)
        state = self._inspector.snapshot(Path(env_path))
        plan = diff(
            lockfile.solution,
            state,
            selection=selection,
            protected=self.policy.protected_packages,
            exact=self.policy.exact)
        record(AuditEvent.make(
            StageType.SYNC,
            EventType.OUTPUT,
            substage="plan",
            message="Nothing to do" if plan.is_empty else "Planned changes",
            payload=plan.to_mapping()))
        return plan

    @audit(StageType.SYNC, "sync")
    def sync(
            self,
            env_path: Path,
            *,
            extras: Iterable[str] = (),
            groups: Iterable[str] = (),
            mode: SyncMode | None = None) -> InstallReport:
        """
        Synchronizes `env_path` with the lockfile.

        Args:
            env_path (Path): The environment root.
            extras (Iterable[str]): Extras to install besides the runtime set.
            groups (Iterable[str]): Dependency groups to install.
            mode (SyncMode | None): Overrides the policy's mode.

        Returns:
            InstallReport: What was applied; empty when already in sync.

        Raises:
            LockfileError: In FROZEN mode, if the lockfile cannot be used.
            EnvironmentLockedError: If another sync holds the environment.
            SyncError: If any item of the plan failed to apply.
        """
        env_path = Path(env_path)
        try:
            with exclusive_lock(env_path, timeout=self.policy.lock_timeout):
                plan = self.plan(env_path, extras=extras, groups=groups, mode=mode)
                if plan.is_empty:
                    return InstallReport()
                report = self._installer.apply(plan)
        except Timeout as e:
            raise EnvironmentLockedError(f"{env_path} is being synchronized by another process") from e

        record(AuditEvent.make(
            StageType.SYNC,
            EventType.COMPLETE if report.ok else EventType.FAIL,
            LevelType.INFO if report.ok else LevelType.ERROR,
            substage="apply",
            message=f"Applied {len(report.applied)} changes, {len(report.failed)} failed",
            payload={"applied": list(report.applied), "failed": dict(report.failed)}))
        if not report.ok:
            raise SyncError(report)
        return report
