from __future__ import annotations

import json
import platform
import re
import sys
from abc import ABC, abstractmethod
from importlib.metadata import Distribution, distributions
from pathlib import Path

from pyenvsync.model.constraint.version_range_model import parse_version
from pyenvsync.model.environment.environment_model import EnvironmentState, InstalledPackage, InterpreterInfo
from pyenvsync.model.requirement.requirement_model import Source, SourceKind, normalize_name

_OS_FAMILIES: dict[str, str] = {
    "linux": "linux",
    "darwin": "macos",
    "win32": "windows",
    "cygwin": "windows",
}


class EnvironmentInspector(ABC):
    """Reads the live state of an environment without changing it."""

    @abstractmethod
    def snapshot(self, path: Path) -> EnvironmentState:
        raise NotImplementedError


def current_interpreter() -> InterpreterInfo:
    return InterpreterInfo(
        implementation=sys.implementation.name,
        version=parse_version(platform.python_version()),
        os_family=_OS_FAMILIES.get(sys.platform, sys.platform),
        arch=platform.machine().lower())


def site_packages_dirs(env_root: Path) -> list[Path]:
    """
    The directories of `env_root` that hold installed distributions. A
    directory that itself contains `.dist-info` folders is used as is.
    """
    if any(env_root.glob("*.dist-info")):
        return [env_root]
    found = sorted(env_root.glob("lib/python*/site-packages")) + sorted(env_root.glob("Lib/site-packages"))
    return [p for p in found if p.is_dir()]


def _read_pyvenv_cfg(env_root: Path) -> dict[str, str]:
    cfg = env_root / "pyvenv.cfg"
    if not cfg.is_file():
        return {}
    values: dict[str, str] = {}
    for line in cfg.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip().lower()] = value.strip()
    return values


def interpreter_for(env_root: Path) -> InterpreterInfo:
    """
    Interpreter facts for a virtual environment, from its `pyvenv.cfg` when
    present and from the running interpreter otherwise.
    """
    running = current_interpreter()
    cfg = _read_pyvenv_cfg(env_root)
    # virtualenv writes e.g. 3.11.9.final.0
    raw = cfg.get("version_info") or cfg.get("version") or ""
    match = re.match(r"\d+(?:\.\d+)*", raw)
    version = match.group(0) if match else None
    implementation = cfg.get("implementation")
    return InterpreterInfo(
        implementation=implementation.lower() if implementation else running.implementation,
        version=parse_version(version) if version else running.version,
        os_family=running.os_family,
        arch=running.arch)


def source_of(dist: Distribution) -> Source:
    """Provenance from the PEP 610 `direct_url.json`, if the installer wrote one."""
    text = dist.read_text("direct_url.json")
    if not text:
        return Source.registry()
    data = json.loads(text)
    source = Source.from_direct_reference(str(data.get("url", "")))
    editable = bool((data.get("dir_info") or {}).get("editable", False))
    if source.kind is SourceKind.PATH and editable:
        return Source.path(source.location, editable=True)
    return source


class ImportlibMetadataInspector(EnvironmentInspector):
    """Snapshots an environment through `importlib.metadata`."""

    def snapshot(self, path: Path) -> EnvironmentState:
        path = Path(path)
        search = [p.as_posix() for p in site_packages_dirs(path)]
        packages: dict[str, InstalledPackage] = {}
        if search:
            for dist in distributions(path=search):
                name = dist.metadata["Name"]
                if not name:
                    continue
                name = normalize_name(name)
                # first match on the search path wins, as at import time
                packages.setdefault(name, InstalledPackage(
                    name=name,
                    version=parse_version(dist.version),
                    source=source_of(dist)))
        return EnvironmentState(packages=packages, interpreter=interpreter_for(path))
