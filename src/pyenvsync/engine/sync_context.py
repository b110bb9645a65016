from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pyenvsync.model.config.policy_model import ResolvedPolicy

if TYPE_CHECKING:
    from pyenvsync.engine.audit.audit_event_model import AuditEvent


@dataclass(kw_only=True)
class SyncContext:
    """
    The state of one lock or sync run, published through
    `current_sync_context` for the duration of the run.
    """
    project_dir: Path
    policy: ResolvedPolicy = field(default_factory=ResolvedPolicy)
    audit_log: list["AuditEvent"] = field(default_factory=list)

    @property
    def lockfile_path(self) -> Path:
        return self.project_dir / self.policy.lockfile
