from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from packaging.specifiers import InvalidSpecifier, Specifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from typing_extensions import Self

from pyenvsync.errors import ConstraintError
from pyenvsync.helper.multiformat_model_mixin import MultiformatModelMixin


def parse_version(text: str) -> Version:
    """
    Parses a PEP 440 version, raising ConstraintError on malformed input.
    """
    try:
        return Version(str(text).strip())
    except InvalidVersion as e:
        raise ConstraintError(f"invalid version {text!r}") from e


@dataclass(frozen=True, slots=True)
class Interval:
    """
    A contiguous set of versions between two bounds.

    A bound of None is unbounded on that side. Instances are only built
    through `VersionRange`, which guarantees they are non-empty.
    """
    lower: Version | None = None
    lower_inclusive: bool = False
    upper: Version | None = None
    upper_inclusive: bool = False

    def is_empty(self) -> bool:
        if self.lower is None or self.upper is None:
            return False
        if self.lower < self.upper:
            return False
        return not (self.lower == self.upper and self.lower_inclusive and self.upper_inclusive)

    def contains(self, version: Version) -> bool:
        if self.lower is not None:
            if version < self.lower or (version == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if version > self.upper or (version == self.upper and not self.upper_inclusive):
                return False
        return True

    def is_point(self) -> bool:
        return self.lower is not None and self.lower == self.upper

    def __str__(self) -> str:
        if self.is_point():
            return f"=={self.lower}"
        parts = []
        if self.lower is not None:
            parts.append(f"{'>=' if self.lower_inclusive else '>'}{self.lower}")
        if self.upper is not None:
            parts.append(f"{'<=' if self.upper_inclusive else '<'}{self.upper}")
        return ", ".join(parts) if parts else "*"


def _lower_key(iv: Interval) -> tuple:
    # unbounded sorts first; at equal values an inclusive bound starts earlier
    if iv.lower is None:
        return 0, Version("0"), 0
    return 1, iv.lower, 0 if iv.lower_inclusive else 1


def _upper_lt(a: Interval, b: Interval) -> bool:
    """True when interval a ends strictly before interval b ends."""
    if a.upper is None:
        return False
    if b.upper is None:
        return True
    if a.upper != b.upper:
        return a.upper < b.upper
    return not a.upper_inclusive and b.upper_inclusive


def _touches(a: Interval, b: Interval) -> bool:
    """True when b (starting at or after a) overlaps or abuts a without a gap."""
    if a.upper is None or b.lower is None:
        return True
    if b.lower < a.upper:
        return True
    if b.lower == a.upper:
        return a.upper_inclusive or b.lower_inclusive
    return False


def _canonicalize(intervals: Iterable[Interval]) -> tuple[Interval, ...]:
    ordered = sorted((iv for iv in intervals if not iv.is_empty()), key=_lower_key)
    merged: list[Interval] = []
    for iv in ordered:
        if merged and _touches(merged[-1], iv):
            last = merged[-1]
            if _upper_lt(last, iv):
                merged[-1] = Interval(last.lower, last.lower_inclusive, iv.upper, iv.upper_inclusive)
            continue
        merged.append(iv)
    return tuple(merged)


def _intersect_intervals(a: Interval, b: Interval) -> Interval:
    if _lower_key(a) >= _lower_key(b):
        lower, lower_inc = a.lower, a.lower_inclusive
    else:
        lower, lower_inc = b.lower, b.lower_inclusive
    if _upper_lt(a, b):
        upper, upper_inc = a.upper, a.upper_inclusive
    else:
        upper, upper_inc = b.upper, b.upper_inclusive
    return Interval(lower, lower_inc, upper, upper_inc)


def _prefix_bounds(raw: str) -> tuple[Version, Version]:
    """
    Bounds of a `==X.Y.*` prefix match: [X.Y.dev0, X.(Y+1).dev0).
    """
    base = parse_version(raw)
    release = list(base.release)
    epoch = f"{base.epoch}!" if base.epoch else ""
    lower = Version(f"{epoch}{'.'.join(str(p) for p in release)}.dev0")
    release[-1] += 1
    upper = Version(f"{epoch}{'.'.join(str(p) for p in release)}.dev0")
    return lower, upper


@dataclass(frozen=True, slots=True)
class VersionRange(MultiformatModelMixin):
    """
    A set of versions expressed as a canonical union of disjoint intervals.

    This is the algebraic form of a version specifier. Intersection, union,
    complement, and emptiness are all computed on the interval list without
    enumerating versions, so they cost time linear in the number of
    comparison operators involved. The empty range is an ordinary value:
    every operation on it is defined and nothing raises.

    Attributes:
        intervals (tuple[Interval, ...]): Sorted, non-overlapping, non-adjacent
            intervals. Empty means no version is allowed.
    """
    intervals: tuple[Interval, ...] = field(default_factory=tuple)

    # ---- constructors ----

    @classmethod
    def empty(cls) -> VersionRange:
        return cls(())

    @classmethod
    def full(cls) -> VersionRange:
        return cls((Interval(),))

    @classmethod
    def exact(cls, version: Version | str) -> VersionRange:
        v = version if isinstance(version, Version) else parse_version(version)
        return cls((Interval(v, True, v, True),))

    @classmethod
    def at_least(cls, version: Version | str, *, inclusive: bool = True) -> VersionRange:
        v = version if isinstance(version, Version) else parse_version(version)
        return cls((Interval(v, inclusive, None, False),))

    @classmethod
    def below(cls, version: Version | str, *, inclusive: bool = False) -> VersionRange:
        v = version if isinstance(version, Version) else parse_version(version)
        return cls((Interval(None, False, v, inclusive),))

    @classmethod
    def of(cls, intervals: Iterable[Interval]) -> VersionRange:
        return cls(_canonicalize(intervals))

    @classmethod
    def from_specifier(cls, text: str | SpecifierSet) -> VersionRange:
        """
        Converts a PEP 440 specifier set into a version range.

        An empty specifier string means "any version". Each clause is
        translated to intervals and the clauses are intersected, so a
        contradictory set such as ">=3, <2" yields the empty range instead of
        raising.

        Clauses are read as plain intervals over the PEP 440 ordering, which
        differs from `packaging` in a few places. `<V` admits pre-releases of
        V, since whether a pre-release may be chosen at all is the solver's
        pre-release policy. `>V` admits post-releases of V. `==V` matches V
        only and not its local variants such as `V+cpu`, because index
        candidates never carry local labels.

        Args:
            text (str | SpecifierSet): The specifier, e.g. ">=2.25, <3.0".

        Returns:
            VersionRange: The equivalent range.

        Raises:
            ConstraintError: If the specifier is malformed.
        """
        if isinstance(text, SpecifierSet):
            spec_set = text
        else:
            try:
                spec_set = SpecifierSet(str(text or "").strip())
            except InvalidSpecifier as e:
                raise ConstraintError(f"invalid version specifier {text!r}") from e

        result = cls.full()
        for spec in sorted(spec_set, key=str):
            result = result.intersect(cls._from_single(spec))
        return result

    @classmethod
    def _from_single(cls, spec: Specifier) -> VersionRange:
        op, raw = spec.operator, spec.version
        match op:
            case "==" | "!=" if raw.endswith(".*"):
                lower, upper = _prefix_bounds(raw[:-2])
                rng = cls((Interval(lower, True, upper, False),))
                return rng if op == "==" else rng.complement()
            case "==" | "===":
                return cls.exact(parse_version(raw))
            case "!=":
                return cls.exact(parse_version(raw)).complement()
            case ">=":
                return cls.at_least(raw)
            case ">":
                return cls.at_least(raw, inclusive=False)
            case "<=":
                return cls.below(raw, inclusive=True)
            case "<":
                return cls.below(raw)
            case "~=":
                base = parse_version(raw)
                prefix = ".".join(str(p) for p in base.release[:-1])
                if base.epoch:
                    prefix = f"{base.epoch}!{prefix}"
                _, upper = _prefix_bounds(prefix)
                return cls((Interval(base, True, upper, False),))
            case _:
                raise ConstraintError(f"unsupported specifier operator {op!r} in {spec}")

    # ---- queries ----

    def is_empty(self) -> bool:
        return not self.intervals

    def is_full(self) -> bool:
        return len(self.intervals) == 1 and self.intervals[0] == Interval()

    def contains(self, version: Version) -> bool:
        return any(iv.contains(version) for iv in self.intervals)

    def __contains__(self, version: Version) -> bool:
        return self.contains(version)

    def is_subset(self, other: VersionRange) -> bool:
        return self.difference(other).is_empty()

    def is_disjoint(self, other: VersionRange) -> bool:
        return self.intersect(other).is_empty()

    def single_version(self) -> Version | None:
        if len(self.intervals) == 1 and self.intervals[0].is_point():
            return self.intervals[0].lower
        return None

    # ---- algebra ----

    def intersect(self, other: VersionRange) -> VersionRange:
        out: list[Interval] = []
        i = j = 0
        a, b = self.intervals, other.intervals
        while i < len(a) and j < len(b):
            candidate = _intersect_intervals(a[i], b[j])
            if not candidate.is_empty():
                out.append(candidate)
            if _upper_lt(a[i], b[j]):
                i += 1
            else:
                j += 1
        return VersionRange(_canonicalize(out))

    def union(self, other: VersionRange) -> VersionRange:
        return VersionRange(_canonicalize(self.intervals + other.intervals))

    def complement(self) -> VersionRange:
        if not self.intervals:
            return VersionRange.full()
        out: list[Interval] = []
        prev_upper: Version | None = None
        prev_inclusive = False
        started = False
        for iv in self.intervals:
            if iv.lower is not None:
                out.append(Interval(
                    prev_upper if started else None,
                    (not prev_inclusive) if started else False,
                    iv.lower,
                    not iv.lower_inclusive))
            started = True
            prev_upper, prev_inclusive = iv.upper, iv.upper_inclusive
            if iv.upper is None:
                return VersionRange(_canonicalize(out))
        out.append(Interval(prev_upper, not prev_inclusive, None, False))
        return VersionRange(_canonicalize(out))

    def difference(self, other: VersionRange) -> VersionRange:
        return self.intersect(other.complement())

    # ---- presentation ----

    def __str__(self) -> str:
        if self.is_empty():
            return "<none>"
        if self.is_full():
            return "*"
        return " || ".join(str(iv) for iv in self.intervals)

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"range": str(self)}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        text = str(mapping.get("range") or "*")
        if text == "*":
            return cls.full()
        if text == "<none>":
            return cls.empty()
        result = cls.empty()
        for part in text.split("||"):
            result = result.union(cls.from_specifier(part.strip()))
        return result
