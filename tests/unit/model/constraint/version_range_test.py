from __future__ import annotations

from typing import Any

import pytest
from packaging.version import Version

from pyenvsync.errors import ConstraintError
from pyenvsync.model.constraint.version_range_model import VersionRange, parse_version

V = Version


_CONTAINS_CASES: list[dict[str, Any]] = [
    {"spec": ">=2.25,<3.0", "inside": ["2.25", "2.31.0", "2.99"], "outside": ["2.24", "3.0", "3.1"]},
    {"spec": "==1.4.*", "inside": ["1.4", "1.4.0", "1.4.9"], "outside": ["1.3.9", "1.5"]},
    {"spec": "!=1.5", "inside": ["1.4", "1.6"], "outside": ["1.5", "1.5.0"]},
    {"spec": "~=2.2", "inside": ["2.2", "2.9"], "outside": ["2.1", "3.0"]},
    {"spec": "~=1.4.5", "inside": ["1.4.5", "1.4.9"], "outside": ["1.4.4", "1.5.0"]},
    {"spec": ">1.0", "inside": ["1.0.1", "2"], "outside": ["1.0", "0.9"]},
    {"spec": "<=1.0", "inside": ["1.0", "0.1"], "outside": ["1.0.1"]},
    {"spec": "==2.0", "inside": ["2.0", "2.0.0"], "outside": ["2.0.1"]},
    {"spec": "", "inside": ["0.0.1", "99"], "outside": []},
]


@pytest.mark.parametrize("row", _CONTAINS_CASES)
def test_from_specifier_contains(row: dict[str, Any]):
    rng = VersionRange.from_specifier(row["spec"])
    for v in row["inside"]:
        assert rng.contains(V(v)), f"{v} should be in {row['spec']}"
    for v in row["outside"]:
        assert V(v) not in rng, f"{v} should not be in {row['spec']}"


def test_intersection_of_disjoint_ranges_is_empty_and_detectable():
    a = VersionRange.from_specifier(">=2.0")
    b = VersionRange.from_specifier("<2.0")
    both = a.intersect(b)
    assert both.is_empty()
    assert str(both) == "<none>"
    assert a.is_disjoint(b)


def test_empty_range_propagates_through_intersection():
    empty = VersionRange.empty()
    assert empty.intersect(VersionRange.full()).is_empty()
    assert VersionRange.from_specifier(">=1").intersect(empty).is_empty()
    assert not empty.contains(V("1.0"))


def test_union_merges_adjacent_intervals():
    lower = VersionRange.from_specifier("<2.0")
    upper = VersionRange.from_specifier(">=2.0")
    assert lower.union(upper).is_full()


def test_complement_and_difference():
    rng = VersionRange.from_specifier(">=1.0,<2.0")
    outside = rng.complement()
    assert V("0.9") in outside
    assert V("2.0") in outside
    assert V("1.5") not in outside
    assert outside.complement() == rng

    diff = VersionRange.from_specifier(">=1.0").difference(rng)
    assert V("1.5") not in diff
    assert V("2.0") in diff


def test_subset_relations():
    narrow = VersionRange.from_specifier(">=1.2,<1.3")
    wide = VersionRange.from_specifier(">=1.0,<2.0")
    assert narrow.is_subset(wide)
    assert not wide.is_subset(narrow)
    assert VersionRange.empty().is_subset(narrow)


def test_exact_and_single_version():
    rng = VersionRange.exact(V("1.2.3"))
    assert rng.single_version() == V("1.2.3")
    assert VersionRange.from_specifier(">=1").single_version() is None
    assert str(rng) == "==1.2.3"


def test_str_is_canonical_regardless_of_clause_order():
    a = VersionRange.from_specifier("<3.0,>=2.25")
    b = VersionRange.from_specifier(">=2.25, <3.0")
    assert a == b
    assert str(a) == str(b) == ">=2.25, <3.0"


def test_mapping_round_trip_of_union():
    rng = VersionRange.from_specifier("!=1.5")
    assert VersionRange.from_mapping(rng.to_mapping()) == rng


@pytest.mark.parametrize("text", ["not-a-version", ""])
def test_parse_version_rejects_garbage(text: str):
    with pytest.raises(ConstraintError):
        parse_version(text)


def test_from_specifier_rejects_garbage():
    with pytest.raises(ConstraintError):
        VersionRange.from_specifier(">>1")


def test_clauses_are_plain_intervals():
    assert V("3.0rc1") in VersionRange.from_specifier("<3.0")
    assert V("2.0+cpu") not in VersionRange.from_specifier("==2.0")
    assert V("2.0+cpu") in VersionRange.from_specifier(">=2.0")
    assert V("1.0.post1") in VersionRange.from_specifier(">1.0")
