from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from packaging.requirements import InvalidRequirement, Requirement as PkgRequirement
from packaging.utils import canonicalize_name

from pyenvsync.errors import ConstraintError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin
from pyenvsync.model.constraint.marker_model import TRUE, MarkerExpr, marker_from_packaging, parse_marker
from pyenvsync.model.constraint.version_range_model import VersionRange

DEFAULT_INDEX = "pypi"


def normalize_name(name: str) -> str:
    """PEP 503 normalization; applying it twice gives the same result."""
    return canonicalize_name(str(name))


class SourceKind(str, Enum):
    REGISTRY = "registry"
    URL = "url"
    PATH = "path"


@dataclass(frozen=True, kw_only=True, slots=True)
class Source(MultiformatModelMixin):
    """
    Where a package comes from.

    Attributes:
        kind (SourceKind): registry, url, or path.
        location (str): The index name for a registry source, the URL for a
            direct reference, or the POSIX path for a local source.
        editable (bool): Only meaningful for path sources.
    """
    kind: SourceKind = SourceKind.REGISTRY
    location: str = DEFAULT_INDEX
    editable: bool = False

    @classmethod
    def registry(cls, index: str = DEFAULT_INDEX) -> Source:
        return cls(kind=SourceKind.REGISTRY, location=index)

    @classmethod
    def url(cls, url: str) -> Source:
        return cls(kind=SourceKind.URL, location=url)

    @classmethod
    def path(cls, path: str | Path, *, editable: bool = False) -> Source:
        return cls(kind=SourceKind.PATH, location=Path(path).as_posix(), editable=editable)

    @classmethod
    def from_direct_reference(cls, url: str) -> Source:
        """A `file://` reference becomes a path source; anything else stays a URL."""
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return cls.path(unquote(parsed.path))
        return cls.url(url)

    @property
    def is_registry(self) -> bool:
        return self.kind is SourceKind.REGISTRY

    def __str__(self) -> str:
        match self.kind:
            case SourceKind.REGISTRY:
                return f"registry+{self.location}"
            case SourceKind.PATH if self.editable:
                return f"editable+{self.location}"
            case _:
                return f"{self.kind.value}+{self.location}"

    def to_mapping(self) -> dict[str, Any]:
        mapping: dict[str, Any] = {"kind": self.kind.value, "location": self.location}
        if self.editable:
            mapping["editable"] = True
        return mapping

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Source:
        return cls(
            kind=SourceKind(mapping.get("kind", SourceKind.REGISTRY.value)),
            location=str(mapping.get("location", DEFAULT_INDEX)),
            editable=bool(mapping.get("editable", False)))


class RootKind(str, Enum):
    RUNTIME = "runtime"
    EXTRA = "extra"
    GROUP = "group"


@dataclass(frozen=True, slots=True)
class RequirementRoot:
    """
    Which activatable requirement set a root requirement belongs to.

    Runtime requirements are always active. Extras and dependency groups are
    parallel roots that are only active when selected, and they are never
    folded into the runtime set.
    """
    kind: RootKind = RootKind.RUNTIME
    name: str | None = None

    @classmethod
    def runtime(cls) -> RequirementRoot:
        return cls(RootKind.RUNTIME)

    @classmethod
    def extra(cls, name: str) -> RequirementRoot:
        return cls(RootKind.EXTRA, normalize_name(name))

    @classmethod
    def group(cls, name: str) -> RequirementRoot:
        return cls(RootKind.GROUP, normalize_name(name))

    @classmethod
    def parse(cls, text: str) -> RequirementRoot:
        kind, _, name = str(text).partition(":")
        match kind:
            case "runtime":
                return cls.runtime()
            case "extra" if name:
                return cls.extra(name)
            case "group" if name:
                return cls.group(name)
            case _:
                raise ConstraintError(f"invalid requirement root {text!r}")

    def __str__(self) -> str:
        return self.kind.value if self.name is None else f"{self.kind.value}:{self.name}"


RUNTIME = RequirementRoot.runtime()


@dataclass(frozen=True, kw_only=True, slots=True)
class Requirement(MultiformatModelMixin):
    """
    A request for a package, immutable once created.

    Attributes:
        name (str): The normalized package name.
        specifier (VersionRange): The allowed versions.
        specifier_text (str): The specifier as declared, kept for messages.
        marker (MarkerExpr): When the requirement applies.
        extras (frozenset[str]): Requested extras of the package.
        source (Source): Where the package must come from.
        root (RequirementRoot): The requirement set that introduced it.
    """
    name: str
    specifier: VersionRange = field(default_factory=VersionRange.full)
    specifier_text: str = ""
    marker: MarkerExpr = TRUE
    extras: frozenset[str] = frozenset()
    source: Source = field(default_factory=Source.registry)
    root: RequirementRoot = RUNTIME

    @classmethod
    def parse(cls, text: str, *, root: RequirementRoot = RUNTIME, source: Source | None = None) -> Requirement:
        """
        Parses a PEP 508 requirement string.

        Args:
            text (str): e.g. `requests[socks]>=2.25,<3; python_version >= "3.8"`.
            root (RequirementRoot): The root tag to attach.
            source (Source | None): Overrides the source; otherwise a direct
                URL reference yields a URL or path source and anything else
                the default registry.

        Returns:
            Requirement: The parsed requirement.

        Raises:
            ConstraintError: If the string is not a valid requirement.
        """
        try:
            req = PkgRequirement(str(text))
        except InvalidRequirement as e:
            raise ConstraintError(f"invalid requirement {text!r}: {e}") from e
        if source is None:
            source = Source.from_direct_reference(req.url) if req.url else Source.registry()
        spec_text = str(req.specifier)
        return cls(
            name=normalize_name(req.name),
            specifier=VersionRange.from_specifier(req.specifier),
            specifier_text=spec_text,
            marker=marker_from_packaging(req.marker),
            extras=frozenset(normalize_name(e) for e in req.extras),
            source=source,
            root=root)

    def with_specifier(self, specifier: VersionRange, text: str) -> Requirement:
        return replace(self, specifier=specifier, specifier_text=text)

    def with_source(self, source: Source) -> Requirement:
        return replace(self, source=source)

    def sort_key(self) -> tuple[str, str, str, str, str]:
        return self.name, str(self.root), ",".join(sorted(self.extras)), str(self.specifier), str(self.marker)

    def __str__(self) -> str:
        extras = f"[{','.join(sorted(self.extras))}]" if self.extras else ""
        text = f"{self.name}{extras}"
        if self.source.kind.value == "url":
            text += f" @ {self.source.location}"
        elif not self.specifier.is_full():
            text += self.specifier_text or str(self.specifier)
        marker = str(self.marker)
        return f"{text}; {marker}" if marker else text

    def to_mapping(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "specifier": str(self.specifier),
            "specifier_text": self.specifier_text,
            "marker": str(self.marker),
            "extras": sorted(self.extras),
            "source": self.source.to_mapping(),
            "root": str(self.root),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Requirement:
        return cls(
            name=normalize_name(mapping["name"]),
            specifier=VersionRange.from_mapping({"range": mapping.get("specifier", "*")}),
            specifier_text=str(mapping.get("specifier_text", "")),
            marker=parse_marker(mapping.get("marker", "")),
            extras=frozenset(mapping.get("extras", ())),
            source=Source.from_mapping(mapping.get("source", {})),
            root=RequirementRoot.parse(mapping.get("root", "runtime")))
