from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.config.provenance_model import OperationKind, ProvenanceEvent, SourceKind
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment, parse_environments

DEFAULT_INDEX_URL = "https://pypi.org/simple"
DEFAULT_LOCKFILE_NAME = "pyenvsync.lock"


class SyncMode(str, Enum):
    """
    Whether synchronization may re-resolve.

    Attributes:
        LOCKED (str): A stale, missing, or corrupt lockfile is re-resolved and
            rewritten before planning. The default.
        FROZEN (str): Only the existing lockfile is trusted; if it is missing,
            corrupt, or stale, synchronization fails.
    """
    LOCKED = "locked"
    FROZEN = "frozen"


class PreReleasePolicy(str, Enum):
    DISALLOW = "disallow"
    ALLOW = "allow"
    IF_NECESSARY = "if-necessary"


SCALAR_FIELDS: dict[str, type] = {
    "index_url": str,
    "python_version": str,
    "mode": SyncMode,
    "prerelease": PreReleasePolicy,
    "tie_break": str,
    "lockfile": str,
    "lock_timeout": float,
    "fetch_retries": int,
    "fetch_workers": int,
    "max_iterations": int,
    "exact": bool,
}

LIST_FIELDS: tuple[str, ...] = (
    "extra_index_urls",
    "constraints",
    "overrides",
    "environments",
    "protected_packages",
)

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


def _normalize_str_list(value: Any) -> list[str]:
    """
    Coerces a configuration value into a list of strings. A string is split
    on commas and whitespace, which is how list values arrive from
    environment variables.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [part for part in value.replace(",", " ").split() if part]
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return [str(value)]


def _coerce_scalar(key: str, value: Any) -> Any:
    kind = SCALAR_FIELDS[key]
    if value is None:
        return None
    if kind is bool and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"{key}: expected a boolean, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key}: invalid value {value!r}") from e


@dataclass(kw_only=True, slots=True)
class ResolvedPolicy(MultiformatModelMixin):
    """
    The single merged configuration consumed by the resolver and the
    synchronizer.

    Fragments are merged in increasing precedence with `merge_from_mapping`.
    Scalars are overridden by key. List settings are concatenated in
    precedence order, without duplicates, unless the fragment names the key
    in its `replace` list. Every applied key leaves a provenance event.

    Attributes:
        index_url (str): The primary package index.
        extra_index_urls (list[str]): Additional indexes, in precedence order.
        constraints (list[str]): PEP 508 strings intersected with any
            requirement on the same package.
        overrides (list[str]): PEP 508 strings that replace any declared
            specifier on the same package.
        environments (list[str]): Target environment keys for universal
            resolution. Empty means the current interpreter only.
        protected_packages (list[str]): Names never removed by sync.
        python_version (str | None): The preferred interpreter version.
        mode (SyncMode): locked or frozen.
        prerelease (PreReleasePolicy): Pre-release handling.
        tie_break (str): Name of the candidate ordering strategy.
        lockfile (str): Lockfile path, relative to the project root.
        lock_timeout (float): Seconds to wait for the lockfile lock.
        fetch_retries (int): Retries for transient metadata fetch errors.
        fetch_workers (int): Concurrent candidate fetches.
        max_iterations (int): The solver's iteration cap.
        exact (bool): Remove extraneous packages during sync.
        provenance (list[ProvenanceEvent]): How each key got its value.
    """
    index_url: str = DEFAULT_INDEX_URL
    extra_index_urls: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    overrides: list[str] = field(default_factory=list)
    environments: list[str] = field(default_factory=list)
    protected_packages: list[str] = field(default_factory=lambda: ["pip"])
    python_version: str | None = None
    mode: SyncMode = SyncMode.LOCKED
    prerelease: PreReleasePolicy = PreReleasePolicy.IF_NECESSARY
    tie_break: str = "newest"
    lockfile: str = DEFAULT_LOCKFILE_NAME
    lock_timeout: float = 10.0
    fetch_retries: int = 3
    fetch_workers: int = 8
    max_iterations: int = 100_000
    exact: bool = True

    provenance: list[ProvenanceEvent] = field(default_factory=list)

    @property
    def target_environments(self) -> tuple[TargetEnvironment, ...]:
        return parse_environments(self.environments)

    def merge_from_mapping(
            self,
            data: Mapping[str, Any] | None,
            *,
            source: SourceKind,
            details: dict[str, Any] | None = None) -> None:
        """
        Merges one configuration fragment into this policy.

        Unknown keys are rejected so that a typo in a config file is not
        silently ignored.

        Args:
            data (Mapping[str, Any] | None): The fragment. Keys use underscores;
                dashes are accepted. A `replace` key lists list settings the
                fragment replaces instead of extending.
            source (SourceKind): Where the fragment came from.
            details (dict[str, Any] | None): Extra provenance details, such as
                the file the fragment was read from.

        Raises:
            ValueError: If a key is unknown or a value cannot be coerced.
        """
        if not data:
            return

        fragment = {str(k).replace("-", "_"): v for k, v in data.items()}
        replace_keys = {k.replace("-", "_") for k in _normalize_str_list(fragment.pop("replace", None))}
        unknown = (set(fragment) | replace_keys) - set(SCALAR_FIELDS) - set(LIST_FIELDS)
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

        def _record(key: str, operation: OperationKind, value: Any) -> None:
            event_details = {"key": key, "value": value}
            event_details.update(details or {})
            self.provenance.append(ProvenanceEvent(source=source, operation=operation, details=event_details))

        # ---- scalars: incoming overrides ----
        for key in SCALAR_FIELDS:
            if key in fragment:
                value = _coerce_scalar(key, fragment[key])
                setattr(self, key, value)
                _record(key,
                        OperationKind.INIT if source is SourceKind.DEFAULT else OperationKind.MERGE_OVERRIDE,
                        value.value if isinstance(value, Enum) else value)

        # ---- lists: concatenate + dedupe (existing first) unless replaced ----
        for key in LIST_FIELDS:
            if key not in fragment and key not in replace_keys:
                continue
            incoming = _normalize_str_list(fragment.get(key))
            if key in replace_keys:
                setattr(self, key, list(dict.fromkeys(incoming)))
                _record(key, OperationKind.REPLACE, incoming)
                continue
            existing = getattr(self, key) or []
            setattr(self, key, list(dict.fromkeys(existing + incoming)))
            _record(key,
                    OperationKind.INIT if source is SourceKind.DEFAULT else OperationKind.MERGE_EXTEND,
                    incoming)

    def provenance_for(self, key: str) -> list[ProvenanceEvent]:
        return [e for e in self.provenance if e.details.get("key") == key]

    def to_mapping(self) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "index_url": self.index_url,
            "extra_index_urls": list(self.extra_index_urls),
            "constraints": list(self.constraints),
            "overrides": list(self.overrides),
            "environments": list(self.environments),
            "protected_packages": list(self.protected_packages),
            "python_version": self.python_version,
            "mode": self.mode.value,
            "prerelease": self.prerelease.value,
            "tie_break": self.tie_break,
            "lockfile": self.lockfile,
            "lock_timeout": self.lock_timeout,
            "fetch_retries": self.fetch_retries,
            "fetch_workers": self.fetch_workers,
            "max_iterations": self.max_iterations,
            "exact": self.exact,
        }
        return mapping

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> ResolvedPolicy:
        policy = cls(protected_packages=[])
        policy.merge_from_mapping(mapping, source=SourceKind.DEFAULT)
        return policy
