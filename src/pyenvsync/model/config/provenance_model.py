from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin


class SourceKind(str, Enum):
    """
    Where a configuration fragment came from, in increasing precedence.

    Attributes:
        DEFAULT (str): Built-in defaults.
        USER (str): The user-global config file.
        PROJECT (str): `[tool.pyenvsync]` in the project's pyproject.toml.
        ENV (str): `PYENVSYNC_*` environment variables.
        CALL (str): Explicit overrides passed by the caller.
    """
    DEFAULT = "default"
    USER = "user"
    PROJECT = "project"
    ENV = "env"
    CALL = "call"


class OperationKind(str, Enum):
    """
    How a key was applied.

    Attributes:
        INIT (str): The key was set by the defaults.
        MERGE_OVERRIDE (str): A scalar replaced the previous value.
        MERGE_EXTEND (str): A list was appended to the previous value.
        REPLACE (str): A list replaced the previous value because the fragment
            asked for it.
    """
    INIT = "init"
    MERGE_OVERRIDE = "merge_override"
    MERGE_EXTEND = "merge_extend"
    REPLACE = "replace"


@dataclass(slots=True)
class ProvenanceEvent(MultiformatModelMixin):
    """
    Records that one configuration key was applied from one fragment.

    Attributes:
        source (SourceKind): The fragment the value came from.
        operation (OperationKind): How it was applied.
        details (dict[str, Any]): The key, the applied value, and where the
            fragment was read from when known.
    """
    source: SourceKind
    operation: OperationKind
    details: dict[str, Any] = field(default_factory=dict)

    def to_mapping(self) -> Mapping[str, Any]:
        return {
            "source": self.source.value,
            "operation": self.operation.value,
            "details": self.details,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> ProvenanceEvent:
        """
        Creates a ProvenanceEvent from a mapping.

        Raises:
            TypeError: If 'details' is present and is not a mapping.
        """
        details_obj = mapping.get("details") or {}
        if not isinstance(details_obj, dict):
            raise TypeError(f"Expected 'details' to be a mapping, got {type(details_obj)!r}")
        return ProvenanceEvent(
            source=SourceKind(mapping.get("source")),
            operation=OperationKind(mapping.get("operation")),
            details=details_obj)
