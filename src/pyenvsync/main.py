from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from pyenvsync.engine.audit.audit_emitter import emit_audit_log
from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, LevelType, StageType
from pyenvsync.engine.config.config_loader import resolve_policy
from pyenvsync.engine.context_vars import current_sync_context
from pyenvsync.engine.lock.lockfile_store import LockfileStore
from pyenvsync.engine.lock.project_locker import ProjectLocker
from pyenvsync.engine.requirements.project_declarations import load_project_declarations
from pyenvsync.engine.resolution.cancellation import CancellationToken
from pyenvsync.engine.resolution.providers import PackageMetadataProvider
from pyenvsync.engine.sync.inspectors import EnvironmentInspector, ImportlibMetadataInspector, interpreter_for
from pyenvsync.engine.sync.installers import Installer, PipInstaller
from pyenvsync.engine.sync.synchronizer import Synchronizer
from pyenvsync.engine.sync_context import SyncContext
from pyenvsync.model.config.policy_model import SyncMode
from pyenvsync.model.environment.environment_model import InstallReport, InterpreterInfo
from pyenvsync.model.lock.solution_model import Lockfile

R = TypeVar("R")


def _run(
        project_dir: Path,
        action: str,
        body: Callable[[SyncContext], R],
        *,
        overrides: Mapping[str, Any] | None,
        environ: Mapping[str, str] | None,
        user_config: Path | None,
        audit_dest: str | None) -> R:
    """
    Lifecycle wrapper shared by every entrypoint: publishes a SyncContext,
    records LIFECYCLE events around `body`, and always emits the audit log.
    """
    project_dir = Path(project_dir).expanduser().resolve()
    context = SyncContext(project_dir=project_dir)
    var_token = current_sync_context.set(context)
    try:
        context.audit_log.append(
            AuditEvent.make(
                StageType.LIFECYCLE,
                EventType.START,
                message=f"Starting pyenvsync {action}",
                payload={"project_dir": project_dir.as_posix()}))
        context.policy = resolve_policy(project_dir, overrides=overrides, environ=environ, user_config=user_config)
        result = body(context)
        context.audit_log.append(
            AuditEvent.make(
                StageType.LIFECYCLE,
                EventType.COMPLETE,
                message=f"Completed pyenvsync {action}"))
        return result
    except Exception as e:
        context.audit_log.append(
            AuditEvent.make(
                StageType.LIFECYCLE,
                EventType.FAIL,
                LevelType.ERROR,
                message=str(e),
                payload={"error_type": type(e).__name__}))
        raise
    finally:
        current_sync_context.reset(var_token)
        if audit_dest:
            emit_audit_log(context, audit_dest)


def _locker(
        context: SyncContext,
        provider: PackageMetadataProvider,
        interpreter: InterpreterInfo | None,
        token: CancellationToken | None) -> ProjectLocker:
    return ProjectLocker(
        load_project_declarations(context.project_dir),
        context.policy,
        provider,
        LockfileStore(context.lockfile_path, timeout=context.policy.lock_timeout),
        interpreter=interpreter,
        token=token)


def lock_project(
        project_dir: Path,
        provider: PackageMetadataProvider,
        *,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        user_config: Path | None = None,
        token: CancellationToken | None = None,
        audit_dest: str | None = "file") -> Lockfile:
    """
    Resolves every root of the project and writes its lockfile.

    Args:
        project_dir (Path): The directory holding pyproject.toml.
        provider (PackageMetadataProvider): Package metadata source.
        overrides (Mapping[str, Any] | None): Call-time configuration.
        environ (Mapping[str, str] | None): Environment variables to read
            `PYENVSYNC_*` settings from.
        user_config (Path | None): The user config file.
        token (CancellationToken | None): Cancels resolution when set.
        audit_dest (str | None): Where to emit the audit log; None to skip.

    Returns:
        Lockfile: The lockfile that was written.
    """
    return _run(
        project_dir,
        "lock",
        lambda ctx: _locker(ctx, provider, None, token).lock(),
        overrides=overrides,
        environ=environ,
        user_config=user_config,
        audit_dest=audit_dest)


def sync_project(
        project_dir: Path,
        env_path: Path,
        provider: PackageMetadataProvider,
        *,
        extras: Iterable[str] = (),
        groups: Iterable[str] = (),
        mode: SyncMode | None = None,
        inspector: EnvironmentInspector | None = None,
        installer: Installer | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        user_config: Path | None = None,
        token: CancellationToken | None = None,
        audit_dest: str | None = "file") -> InstallReport:
    """
    Brings the environment at `env_path` to the project's lockfile,
    re-resolving first when the policy allows and the lockfile is stale.

    The inspector defaults to reading the environment with
    `importlib.metadata` and the installer to pip of the environment's own
    interpreter.

    Returns:
        InstallReport: What was applied.

    Raises:
        LockfileError: In frozen mode, if the lockfile is missing, corrupt,
            or stale.
        ConstraintError: If no installer is given and `env_path` has no
            interpreter of its own.
        SyncError: If the installer failed for any package.
    """
    env_path = Path(env_path)

    def body(ctx: SyncContext) -> InstallReport:
        interpreter = None if ctx.policy.environments else interpreter_for(env_path)
        synchronizer = Synchronizer(
            _locker(ctx, provider, interpreter, token),
            inspector or ImportlibMetadataInspector(),
            installer or PipInstaller.for_environment(env_path, index_url=ctx.policy.index_url))
        return synchronizer.sync(env_path, extras=extras, groups=groups, mode=mode)

    return _run(
        project_dir,
        "sync",
        body,
        overrides=overrides,
        environ=environ,
        user_config=user_config,
        audit_dest=audit_dest)
