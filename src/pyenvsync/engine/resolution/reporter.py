from __future__ import annotations

from packaging.version import Version

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, LevelType, StageType, record
from pyenvsync.engine.resolution.incompatibility import Incompatibility


class BaseReporter:
    """Hooks the solver calls as it runs. The default does nothing."""

    def starting(self, fork: str) -> None:
        pass

    def deciding(self, package: str, version: Version) -> None:
        pass

    def deriving(self, incompat: Incompatibility) -> None:
        pass

    def conflict(self, incompat: Incompatibility) -> None:
        pass

    def backtracking(self, decision_level: int) -> None:
        pass

    def ending(self, decisions: dict[str, Version]) -> None:
        pass


class AuditReporter(BaseReporter):
    """Records solver progress as audit events of the RESOLVE stage."""

    def __init__(self, substage: str = "solver"):
        self._substage = substage

    def _record(self, event_type: EventType, message: str, level: LevelType = LevelType.DEBUG, **payload) -> None:
        record(AuditEvent.make(
            StageType.RESOLVE,
            event_type,
            level,
            substage=self._substage,
            message=message,
            payload=payload))

    def starting(self, fork: str) -> None:
        self._substage = f"solver:{fork}"
        self._record(EventType.START, f"Solving for {fork}", LevelType.INFO)

    def deciding(self, package: str, version: Version) -> None:
        self._record(EventType.DECISION, f"Selecting {package} {version}", package=package, version=str(version))

    def deriving(self, incompat: Incompatibility) -> None:
        self._record(EventType.DERIVATION, f"Learned: {incompat}")

    def conflict(self, incompat: Incompatibility) -> None:
        self._record(EventType.CONFLICT, f"Conflict: {incompat}")

    def backtracking(self, decision_level: int) -> None:
        self._record(EventType.BACKTRACK, f"Backtracking to decision level {decision_level}",
                     decision_level=decision_level)

    def ending(self, decisions: dict[str, Version]) -> None:
        self._record(
            EventType.COMPLETE,
            f"Selected {len(decisions)} packages",
            LevelType.INFO,
            selected={k: str(v) for k, v in sorted(decisions.items())})
