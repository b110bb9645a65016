from __future__ import annotations

from collections.abc import Mapping, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from packaging.version import Version

from pyenvsync.errors import ConstraintError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.constraint.version_range_model import parse_version


@dataclass(frozen=True, slots=True)
class OsMarkerProfile:
    """
    The PEP 508 marker facts that follow from an operating-system family.

    Attributes:
        sys_platform (str): PEP 508 `sys_platform`, e.g. 'linux', 'win32'.
        platform_system (str): PEP 508 `platform_system`, e.g. 'Linux'.
        os_name (str): PEP 508 `os_name`, e.g. 'posix', 'nt'.
    """
    sys_platform: str
    platform_system: str
    os_name: str


@dataclass(frozen=True, slots=True)
class ImplMarkerProfile:
    """
    The PEP 508 marker facts that follow from a Python implementation.

    Attributes:
        implementation_name (str): Lowercase name, e.g. "cpython".
        platform_python_implementation (str): Display name, e.g. "CPython".
    """
    implementation_name: str
    platform_python_implementation: str


OS_FAMILY_MARKER_PROFILES: dict[str, OsMarkerProfile] = {
    "linux": OsMarkerProfile(sys_platform="linux", platform_system="Linux", os_name="posix"),
    "windows": OsMarkerProfile(sys_platform="win32", platform_system="Windows", os_name="nt"),
    "macos": OsMarkerProfile(sys_platform="darwin", platform_system="Darwin", os_name="posix"),
}

DEFAULT_OS_MARKER_PROFILE = OsMarkerProfile(sys_platform="unknown", platform_system="Unknown", os_name="posix")

IMPL_MARKER_PROFILES: dict[str, ImplMarkerProfile] = {
    "cp": ImplMarkerProfile("cpython", "CPython"),
    "cpython": ImplMarkerProfile("cpython", "CPython"),
    "pp": ImplMarkerProfile("pypy", "PyPy"),
    "pypy": ImplMarkerProfile("pypy", "PyPy"),
}


def _fallback_impl_profile(raw_impl: str) -> ImplMarkerProfile:
    impl = (raw_impl or "").strip().lower() or "unknown"
    return ImplMarkerProfile(implementation_name=impl, platform_python_implementation=impl.capitalize())


@dataclass(frozen=True, kw_only=True, slots=True)
class TargetEnvironment(MultiformatModelMixin):
    """
    One platform a universal lockfile must be valid for.

    Markers are evaluated against the PEP 508 environment derived from this
    descriptor through the OS and implementation profiles. The stable key
    (e.g. `linux-x86_64-cpython-3.12`) is how environments are named in
    configuration and in the lockfile.

    Attributes:
        os_family (str): linux, macos, or windows.
        arch (str): The machine architecture, e.g. x86_64, arm64.
        python_implementation (str): cpython, pypy, ...
        python_version (Version): The interpreter version; a two-part version
            stands for the whole minor series.
    """
    os_family: str
    arch: str
    python_implementation: str
    python_version: Version

    _SEP: ClassVar[str] = "-"

    _KEY_FIELDS: ClassVar[tuple[tuple[str, Callable[[Any], str], Callable[[str], Any]], ...]] = (
        ("os_family", str, str),
        ("arch", str, str),
        ("python_implementation", str, str),
        ("python_version", lambda v: str(v), parse_version))

    @property
    def key(self) -> str:
        return self._SEP.join(enc(getattr(self, name)) for name, enc, _dec in self._KEY_FIELDS)

    @classmethod
    def from_key(cls, key: str) -> TargetEnvironment:
        """
        Parses `os-arch-impl-version`. The architecture may itself contain the
        separator (rare), so the os is split from the left and the rest from
        the right.

        Raises:
            ConstraintError: If the key does not have four parts.
        """
        head, _, rest = str(key).strip().partition(cls._SEP)
        parts = [head, *rest.rsplit(cls._SEP, 2)] if rest else [head]
        if len(parts) != len(cls._KEY_FIELDS) or not all(parts):
            raise ConstraintError(
                f"bad target environment {key!r}: expected os-arch-implementation-version")
        kwargs: dict[str, Any] = {}
        for (name, _enc, dec), raw in zip(cls._KEY_FIELDS, parts, strict=True):
            kwargs[name] = dec(raw.lower() if name != "python_version" else raw)
        return cls(**kwargs)

    def marker_environment(self) -> dict[str, str]:
        py_ver = self.python_version
        os_profile = OS_FAMILY_MARKER_PROFILES.get(self.os_family.strip().lower(), DEFAULT_OS_MARKER_PROFILE)
        impl_key = self.python_implementation.strip().lower()
        impl_profile = IMPL_MARKER_PROFILES.get(impl_key, _fallback_impl_profile(impl_key))
        full_version = str(py_ver) if len(py_ver.release) >= 3 else f"{py_ver.major}.{py_ver.minor}.0"

        return {
            "python_version": f"{py_ver.major}.{py_ver.minor}",
            "python_full_version": full_version,
            "implementation_name": impl_profile.implementation_name,
            "implementation_version": full_version,
            "platform_python_implementation": impl_profile.platform_python_implementation,
            "platform_system": os_profile.platform_system,
            "sys_platform": os_profile.sys_platform,
            "os_name": os_profile.os_name,
            "platform_machine": self.arch,
            "platform_release": "",
            "platform_version": "",
            "extra": "",
        }

    def __str__(self) -> str:
        return self.key

    def to_mapping(self) -> dict[str, Any]:
        return {
            "os_family": self.os_family,
            "arch": self.arch,
            "python_implementation": self.python_implementation,
            "python_version": str(self.python_version),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> TargetEnvironment:
        return cls(
            os_family=mapping["os_family"],
            arch=mapping["arch"],
            python_implementation=mapping["python_implementation"],
            python_version=parse_version(mapping["python_version"]))


def parse_environments(keys: list[str] | tuple[str, ...]) -> tuple[TargetEnvironment, ...]:
    """Parses environment keys, dropping duplicates and sorting by key."""
    by_key = {env.key: env for env in (TargetEnvironment.from_key(k) for k in keys)}
    return tuple(by_key[k] for k in sorted(by_key))
