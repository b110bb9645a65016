from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from pyenvsync.engine.audit.audit_event_model import StageType, audit
from pyenvsync.engine.resolution.candidate_cache import CandidateCache
from pyenvsync.errors import MetadataFetchError, PackageNotFoundError, TransientFetchError
from pyenvsync.model.constraint.marker_model import MarkerAnd, MarkerCompare, MarkerExpr, MarkerNot, MarkerOr
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.requirement.requirement_model import Requirement, normalize_name


def extra_values(expr: MarkerExpr) -> frozenset[str]:
    """The `extra` names a marker compares against."""
    match expr:
        case MarkerCompare(variable="extra", value=value):
            return frozenset({normalize_name(value)})
        case MarkerAnd(children=children) | MarkerOr(children=children):
            return frozenset().union(*(extra_values(c) for c in children))
        case MarkerNot(child=child):
            return extra_values(child)
    return frozenset()


@dataclass(frozen=True, slots=True)
class PartitionBlock:
    """
    Target environments on which every marker in the graph has the same
    value, so one solver run serves all of them.
    """
    environments: tuple[TargetEnvironment, ...]

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(e.key for e in self.environments)


def _collect_markers(
        roots: Iterable[Requirement],
        cache: CandidateCache) -> list[tuple[MarkerExpr, tuple[str, ...]]]:
    """
    Walks every candidate reachable from the roots, ignoring markers and
    versions, and returns each distinct marker with the extra values it must
    be evaluated under.
    """
    markers: dict[str, tuple[MarkerExpr, tuple[str, ...]]] = {}

    def _note(expr: MarkerExpr) -> None:
        if expr.is_always_true():
            return
        markers.setdefault(str(expr), (expr, ("", *sorted(extra_values(expr)))))

    seen: set[str] = set()
    frontier: list[str] = []
    for req in roots:
        _note(req.marker)
        if req.name not in seen:
            seen.add(req.name)
            frontier.append(req.name)

    while frontier:
        cache.prefetch(frontier)
        next_frontier: list[str] = []
        for name in frontier:
            try:
                candidates = cache.get(name)
            except PackageNotFoundError:
                continue
            for candidate in candidates:
                _note(candidate.markers_supported)
                try:
                    declared = cache.declared_requirements(candidate)
                except TransientFetchError:
                    raise
                except MetadataFetchError:
                    continue
                for req in sorted(declared, key=Requirement.sort_key):
                    _note(req.marker)
                    if req.name not in seen:
                        seen.add(req.name)
                        next_frontier.append(req.name)
        frontier = sorted(next_frontier)
    return [markers[k] for k in sorted(markers)]


@audit(StageType.RESOLVE, "partition")
def compute_partition(
        roots: Iterable[Requirement],
        cache: CandidateCache,
        environments: Sequence[TargetEnvironment]) -> list[PartitionBlock]:
    """
    Groups target environments by how they evaluate the graph's markers.

    Two environments land in one block when every marker reachable from the
    roots, under the base context and under each extra it mentions, gives
    the same answer on both. Blocks are ordered by their first environment
    key, which keeps forked resolution deterministic.
    """
    markers = _collect_markers(roots, cache)
    blocks: dict[tuple[bool, ...], list[TargetEnvironment]] = {}
    for env in sorted(environments, key=lambda e: e.key):
        facts = env.marker_environment()
        signature = tuple(
            expr.evaluate({**facts, "extra": extra})
            for expr, extras in markers
            for extra in extras)
        blocks.setdefault(signature, []).append(env)
    return sorted((PartitionBlock(tuple(envs)) for envs in blocks.values()), key=lambda b: b.keys[0])
