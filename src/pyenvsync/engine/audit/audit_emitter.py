from __future__ import annotations

import logging
import sys
from pathlib import Path

from pyenvsync.engine.audit.audit_event_model import AuditEvent, LevelType
from pyenvsync.engine.sync_context import SyncContext

AUDIT_LOGGER_NAME = "pyenvsync.audit"
_LOG_FILE_NAME = "pyenvsync.audit.json"

_LEVELS: dict[LevelType, int] = {
    LevelType.DEBUG: logging.DEBUG,
    LevelType.INFO: logging.INFO,
    LevelType.WARN: logging.WARNING,
    LevelType.ERROR: logging.ERROR,
}


def to_logging_level(level: LevelType) -> int:
    return _LEVELS.get(level, logging.INFO)


def emit_event(logger: logging.Logger, event: AuditEvent, indent: int | None = None) -> None:
    """
    Logs one audit event as JSON at the logging level matching its own level.
    """
    logger.log(to_logging_level(event.level), event.to_json(indent=indent))


def emit_all(logger: logging.Logger, events: list[AuditEvent], indent: int | None = None) -> None:
    for event in events:
        emit_event(logger, event, indent=indent)


def configure_emitter(dest: list[str], level: int = logging.INFO) -> logging.Logger:
    """
    Configures and returns the audit logger. Existing handlers are cleared
    before the new destinations are attached.

    Args:
        dest (list[str]): Destinations, each one of:
            - "stdout": the standard output.
            - "stderr": the standard error.
            - "file:<path>": a file at <path>.
        level (int, optional): The logging level. Defaults to `logging.INFO`.

    Returns:
        logging.Logger: The configured logger.

    Raises:
        ValueError: If a destination is not recognized.
    """
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    for d in dest:
        handler: logging.Handler
        if d == "stdout":
            handler = logging.StreamHandler(sys.stdout)
        elif d == "stderr":
            handler = logging.StreamHandler(sys.stderr)
        elif d.startswith("file:"):
            path = d[len("file:"):]
            handler = logging.FileHandler(path, encoding="utf-8")
        else:
            raise ValueError(f"Unknown audit log destination: {d}")

        handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(handler)

    return logger


def emit_audit_log(
        context: SyncContext,
        dest: str = "file",
        path: Path | None = None,
        level: int = logging.INFO) -> None:
    """
    Emits the audit log of a finished run.

    Args:
        context (SyncContext): The run whose log is emitted.
        dest (str): Space-separated destinations. "file" means `path`, or
            `pyenvsync.audit.json` in the project directory when no path is
            given.
        path (Path | None): The file for the "file" destination.
        level (int): Events below this logging level are dropped.

    Raises:
        ValueError: If no context is given.
    """
    if context is None:
        raise ValueError("No sync context found; cannot emit audit log")
    default_path = path or context.project_dir / _LOG_FILE_NAME
    dests = []
    for d in dest.split():
        if d == "file":
            dests.append(f"file:{default_path}")
        else:
            dests.append(d)
    logger = configure_emitter(dests, level)
    emit_all(logger, context.audit_log)
