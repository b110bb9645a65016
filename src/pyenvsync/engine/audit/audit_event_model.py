from __future__ import annotations

import datetime
import functools
import uuid
from collections.abc import Mapping, Callable
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ParamSpec, TypeVar

from typing_extensions import Self

from pyenvsync.engine.context_vars import current_sync_context
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin

P = ParamSpec("P")
R = TypeVar("R")


# --------------------------------------------------------------------------- #
# Typed + runtime-safe event type definition
# --------------------------------------------------------------------------- #

class StageType(str, Enum):
    """
    The phases of one pyenvsync run.

    Attributes:
        LIFECYCLE (str): The overall orchestration, start to completion.
        CONFIG (str): Merging configuration fragments into a policy.
        RESOLVE (str): Requirement collection and version solving.
        LOCK (str): Reading, checking, and writing the lockfile.
        SYNC (str): Inspecting the environment, planning, and applying.
    """
    LIFECYCLE = "LIFECYCLE"
    CONFIG = "CONFIG"
    RESOLVE = "RESOLVE"
    LOCK = "LOCK"
    SYNC = "SYNC"


class LevelType(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class EventType(str, Enum):
    """
    What kind of thing an audit event records.

    Attributes:
        ACTION (str): A meaningful step, such as writing the lockfile.
        BACKTRACK (str): The solver undid decisions after a conflict.
        COMPLETE (str): A stage or substage finished successfully.
        CONFLICT (str): The solver found an incompatibility that holds.
        DECISION (str): The solver chose a version for a package.
        DERIVATION (str): The solver derived a new incompatibility.
        EXCEPTION (str): A stage raised.
        FAIL (str): The run failed irrecoverably.
        INPUT (str): An external input was read.
        OUTPUT (str): An artifact was produced.
        SKIP (str): A step was intentionally bypassed.
        START (str): A stage or substage began.
    """
    ACTION = "ACTION"
    BACKTRACK = "BACKTRACK"
    COMPLETE = "COMPLETE"
    CONFLICT = "CONFLICT"
    DECISION = "DECISION"
    DERIVATION = "DERIVATION"
    EXCEPTION = "EXCEPTION"
    FAIL = "FAIL"
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"
    SKIP = "SKIP"
    START = "START"


def record(event: AuditEvent) -> None:
    """Appends an event to the active run's audit log; a no-op outside a run."""
    ctx = current_sync_context.get(None)
    if ctx is not None:
        ctx.audit_log.append(event)


def audit(stage: StageType, substage: str | None = None) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator that records START, COMPLETE, and EXCEPTION events for a stage.

    Events go into the audit log of the active SyncContext. Outside a run
    (for example when the engine is used as a library) nothing is recorded
    and the function runs unchanged.

    Args:
        stage (StageType): The stage to record events under.
        substage (str | None): An optional substage name.

    Returns:
        Callable[[Callable[P, R]], Callable[P, R]]: The decorator.
    """
    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            record(AuditEvent.make(stage, EventType.START, substage=substage))
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                record(AuditEvent.make(
                    stage,
                    EventType.EXCEPTION,
                    LevelType.ERROR,
                    substage=substage,
                    message=str(e),
                    payload={"error_type": type(e).__name__}))
                raise
            record(AuditEvent.make(stage, EventType.COMPLETE, substage=substage))
            return result

        return wrapper

    return decorator


# --------------------------------------------------------------------------- #
# Data model
# --------------------------------------------------------------------------- #

@dataclass(slots=True, frozen=True)
class AuditEvent(MultiformatModelMixin):
    """
    One structured entry of a run's audit log.

    Attributes:
        event_id (str): Unique identifier. Defaults to a new UUID string.
        event_type (EventType): What happened. Defaults to ACTION.
        level (LevelType): Severity. Defaults to INFO.
        message (str | None): Human-readable description.
        payload (Mapping[str, Any] | None): Structured detail.
        stage (StageType | None): The stage the event belongs to.
        substage (str | None): Optional finer-grained stage name.
        timestamp (datetime.datetime): UTC time of the event.
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType = EventType.ACTION
    level: LevelType = LevelType.INFO
    message: str | None = field(default=None)
    payload: Mapping[str, Any] | None = field(default=None)
    stage: StageType | None = None
    substage: str | None = field(default=None)
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    def __post_init__(self):
        """
        Raises:
            TypeError: If `stage`, `event_type`, or `level` has the wrong type.
        """
        if not isinstance(self.stage, StageType):
            raise TypeError("AuditEvent.stage must be a StageType")
        if not isinstance(self.event_type, EventType):
            raise TypeError("AuditEvent.event_type must be an EventType")
        if not isinstance(self.level, LevelType):
            raise TypeError("AuditEvent.level must be a LevelType")

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "level": self.level.value,
            "message": self.message or "",
            "payload": dict(self.payload or {}),
            "stage": self.stage.value if self.stage else None,
            "substage": self.substage or "",
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def make(
            cls,
            stage: StageType,
            event_type: EventType,
            level: LevelType = LevelType.INFO,
            *,
            substage: str | None = None,
            message: str | None = None,
            payload: dict[str, Any] | None = None) -> AuditEvent:
        """
        Creates an event with a read-only payload.

        Args:
            stage: The stage of the run.
            event_type: What happened.
            level: Severity. Defaults to LevelType.INFO.
            substage: Optional substage name.
            message: Optional description.
            payload: Optional structured detail.

        Returns:
            AuditEvent: The new event.
        """
        return cls(
            stage=stage,
            substage=substage,
            event_type=event_type,
            level=level,
            message=message,
            payload=MappingProxyType(payload or {}))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            event_id=mapping.get("event_id", str(uuid.uuid4())),
            event_type=EventType(mapping.get("event_type", EventType.ACTION.value)),
            level=LevelType(mapping.get("level", LevelType.INFO.value)),
            message=mapping.get("message"),
            payload=mapping.get("payload"),
            stage=StageType(mapping.get("stage", StageType.LIFECYCLE.value)),
            substage=mapping.get("substage"),
            timestamp=datetime.datetime.fromisoformat(
                mapping.get("timestamp", datetime.datetime.now(datetime.timezone.utc).isoformat())))
