from __future__ import annotations

from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyenvsync.engine.sync_context import SyncContext

current_sync_context: ContextVar["SyncContext"] = ContextVar(
    "current_sync_context")
