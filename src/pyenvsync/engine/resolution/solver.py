from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from packaging.version import Version

from pyenvsync.engine.requirements.project_declarations import PolicyRequirements
from pyenvsync.engine.resolution.cancellation import CancellationToken
from pyenvsync.engine.resolution.candidate_cache import CandidateCache
from pyenvsync.engine.resolution.failure_report import explain
from pyenvsync.engine.resolution.incompatibility import ROOT, CauseKind, Incompatibility, Relation, Term
from pyenvsync.engine.resolution.partial_solution import PartialSolution
from pyenvsync.engine.resolution.reporter import BaseReporter
from pyenvsync.engine.resolution.tie_break.tie_break_strategy import NewestFirstStrategy, TieBreakStrategy
from pyenvsync.errors import (
    ConflictError, ConstraintError, MetadataFetchError, PackageNotFoundError, ResolverLimitError, TransientFetchError)
from pyenvsync.model.config.policy_model import PreReleasePolicy
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import VersionRange
from pyenvsync.model.requirement.candidate_model import PackageCandidate
from pyenvsync.model.requirement.requirement_model import DEFAULT_INDEX, Requirement, Source, SourceKind

ROOT_VERSION = Version("0")

_CONFLICT = object()


def virtual_name(name: str, extra: str) -> str:
    return f"{name}[{extra}]"


def split_virtual(package: str) -> tuple[str, str | None]:
    """Splits `name[extra]` into its base name and extra."""
    if package.endswith("]") and "[" in package:
        base, _, extra = package[:-1].partition("[")
        return base, extra
    return package, None


@dataclass(frozen=True, kw_only=True, slots=True)
class SolverOptions:
    """
    Attributes:
        prerelease (PreReleasePolicy): How pre-releases are considered.
        max_iterations (int): Decisions plus conflict steps before giving up
            with `ResolverLimitError`.
        tie_break (TieBreakStrategy): Orders candidates of equal version.
    """
    prerelease: PreReleasePolicy = PreReleasePolicy.IF_NECESSARY
    max_iterations: int = 100_000
    tie_break: TieBreakStrategy = field(default_factory=NewestFirstStrategy)


@dataclass(frozen=True, slots=True)
class SelectedPackage:
    candidate: PackageCandidate
    dependencies: frozenset[str]


def pinned_sources(requirements: Iterable[Requirement]) -> dict[str, Source]:
    """
    Non-default sources requested by root requirements, by package name.

    Raises:
        ConstraintError: If two roots ask for the same package from
            different sources.
    """
    pinned: dict[str, Source] = {}
    for req in requirements:
        source = req.source
        if source.kind is SourceKind.REGISTRY and source.location == DEFAULT_INDEX:
            continue
        prior = pinned.get(req.name)
        if prior is not None and (prior.kind, prior.location) != (source.kind, source.location):
            raise ConstraintError(f"conflicting sources for {req.name}: {prior} and {source}")
        pinned[req.name] = source
    return pinned


class PubGrubSolver:
    """
    Conflict-driven version solving for one set of target environments.

    The solver keeps a set of incompatibilities and a partial solution.
    Each round it propagates incompatibilities to a fixpoint, resolving any
    conflict by deriving a new incompatibility and backjumping, then decides
    the undecided package with the fewest remaining versions, choosing its
    newest allowed version. It stops when every required package has a
    decision, or raises `ConflictError` when the root itself becomes
    incompatible.

    Markers are evaluated against the first environment; the caller
    guarantees that every marker in the graph has the same value in all of
    `environments`. Candidates must support every one of them.

    Extras are modelled as virtual packages named `name[extra]` that depend
    on exactly the same version of `name` plus the extra's requirements.
    """

    def __init__(
            self,
            root_requirements: Iterable[Requirement],
            cache: CandidateCache,
            environments: Sequence[TargetEnvironment],
            *,
            options: SolverOptions | None = None,
            policy_requirements: PolicyRequirements | None = None,
            token: CancellationToken | None = None,
            reporter: BaseReporter | None = None):
        if not environments:
            raise ValueError("at least one target environment is required")
        self._root_requirements = tuple(sorted(root_requirements, key=Requirement.sort_key))
        self._cache = cache
        self._environments = tuple(environments)
        self._facts = [e.marker_environment() for e in self._environments]
        self._options = options or SolverOptions()
        self._policy = policy_requirements or PolicyRequirements()
        self._token = token or CancellationToken()
        self._reporter = reporter or BaseReporter()
        self._sources = pinned_sources(self._root_requirements)

        self._solution = PartialSolution()
        self._incompatibilities: dict[str, list[Incompatibility]] = {}
        self._expanded: dict[tuple[str, Version], list[Incompatibility]] = {}
        self._dependencies_of: dict[tuple[str, Version], frozenset[str]] = {}
        self._chosen: dict[tuple[str, Version], PackageCandidate] = {}
        self._candidate_lists: dict[str, list[PackageCandidate]] = {}
        self._excluded: dict[str, int] = {}
        self._iterations = 0

    @property
    def label(self) -> str:
        return ", ".join(e.key for e in self._environments)

    # ---- entry point ----

    def solve(self) -> dict[str, SelectedPackage]:
        """
        Returns:
            dict[str, SelectedPackage]: The selected candidate of every
            required package, with the base names of its dependencies.

        Raises:
            ConflictError: If no solution exists.
            ResolverLimitError: If the iteration cap is reached.
            ResolutionCancelled: If the token is cancelled.
            MetadataFetchError: If candidates cannot be fetched.
        """
        self._reporter.starting(self.label)
        self._add(Incompatibility.create([Term(ROOT, VersionRange.exact(ROOT_VERSION), False)], CauseKind.ROOT))

        next_package: str | None = ROOT
        while next_package is not None:
            self._propagate(next_package)
            self._tick()
            next_package = self._choose_package_version()

        decisions = self._solution.decisions
        self._reporter.ending({k: v for k, v in decisions.items() if k != ROOT})
        return self._result(decisions)

    def _tick(self) -> None:
        self._token.raise_if_cancelled()
        self._iterations += 1
        if self._iterations > self._options.max_iterations:
            raise ResolverLimitError(
                f"resolver gave up after {self._options.max_iterations} iterations for {self.label}")

    def _result(self, decisions: dict[str, Version]) -> dict[str, SelectedPackage]:
        dependencies: dict[str, set[str]] = defaultdict(set)
        for package, version in decisions.items():
            if package == ROOT:
                continue
            base, _extra = split_virtual(package)
            dependencies[base] |= self._dependencies_of.get((package, version), frozenset()) - {base}

        result: dict[str, SelectedPackage] = {}
        for package, version in sorted(decisions.items()):
            if package == ROOT or split_virtual(package)[1] is not None:
                continue
            result[package] = SelectedPackage(
                candidate=self._chosen[(package, version)],
                dependencies=frozenset(dependencies[package]))
        return result

    # ---- incompatibilities ----

    def _add(self, incompat: Incompatibility) -> None:
        for term in incompat.terms:
            self._incompatibilities.setdefault(term.package, []).append(incompat)

    # ---- unit propagation ----

    def _propagate(self, package: str) -> None:
        changed = {package}
        while changed:
            self._token.raise_if_cancelled()
            current = changed.pop()
            for incompat in reversed(list(self._incompatibilities.get(current, ()))):
                result = self._propagate_incompatibility(incompat)
                if result is _CONFLICT:
                    self._reporter.conflict(incompat)
                    root_cause = self._resolve_conflict(incompat)
                    changed.clear()
                    derived = self._propagate_incompatibility(root_cause)
                    if isinstance(derived, str):
                        changed.add(derived)
                    break
                if result is not None:
                    changed.add(result)

    def _propagate_incompatibility(self, incompat: Incompatibility) -> object:
        unsatisfied: Term | None = None
        for term in incompat.terms:
            relation = self._solution.relation(term)
            if relation is Relation.CONTRADICTED:
                return None
            if relation is Relation.INCONCLUSIVE:
                if unsatisfied is not None:
                    return None
                unsatisfied = term

        if unsatisfied is None:
            return _CONFLICT
        self._solution.derive(unsatisfied.inverse, incompat)
        return unsatisfied.package

    # ---- conflict resolution ----

    def _resolve_conflict(self, incompat: Incompatibility) -> Incompatibility:
        new_incompatibility = False
        while not incompat.is_failure():
            self._tick()
            most_recent_term: Term | None = None
            most_recent_satisfier = None
            difference: Term | None = None
            previous_satisfier_level = 1

            for term in incompat.terms:
                satisfier = self._solution.satisfier(term)
                if most_recent_satisfier is None:
                    most_recent_term, most_recent_satisfier = term, satisfier
                elif most_recent_satisfier.index < satisfier.index:
                    previous_satisfier_level = max(previous_satisfier_level, most_recent_satisfier.decision_level)
                    most_recent_term, most_recent_satisfier = term, satisfier
                    difference = None
                else:
                    previous_satisfier_level = max(previous_satisfier_level, satisfier.decision_level)

                if most_recent_term is term:
                    difference = most_recent_satisfier.term.difference(most_recent_term)
                    if difference.is_empty():
                        difference = None
                    else:
                        previous_satisfier_level = max(
                            previous_satisfier_level,
                            self._solution.satisfier(difference.inverse).decision_level)

            if (previous_satisfier_level < most_recent_satisfier.decision_level
                    or most_recent_satisfier.cause is None):
                self._reporter.backtracking(previous_satisfier_level)
                self._solution.backtrack(previous_satisfier_level)
                if new_incompatibility:
                    self._add(incompat)
                return incompat

            cause = most_recent_satisfier.cause
            new_terms = [t for t in incompat.terms if t is not most_recent_term]
            new_terms.extend(t for t in cause.terms if t.package != most_recent_satisfier.package)
            if difference is not None:
                new_terms.append(difference.inverse)
            incompat = Incompatibility.create(new_terms, CauseKind.CONFLICT, left=incompat, right=cause)
            new_incompatibility = True
            self._reporter.deriving(incompat)

        raise ConflictError(explain(incompat), incompat)

    # ---- candidates ----

    def _candidates(self, name: str) -> list[PackageCandidate]:
        """
        The usable candidates of a base package in tie-break order.

        Raises:
            PackageNotFoundError: If the provider does not know the package.
        """
        cached = self._candidate_lists.get(name)
        if cached is not None:
            return cached
        pinned = self._sources.get(name)
        usable: list[PackageCandidate] = []
        excluded = 0
        for candidate in self._options.tie_break.order(self._cache.get(name)):
            if pinned is not None and (candidate.source.kind, candidate.source.location) != (pinned.kind, pinned.location):
                continue
            if not all(candidate.markers_supported.evaluate(facts) for facts in self._facts):
                excluded += 1
                continue
            usable.append(candidate)
        self._candidate_lists[name] = usable
        self._excluded[name] = excluded
        return usable

    def _versions_in(self, package: str, versions: VersionRange) -> list[PackageCandidate]:
        """One candidate per version allowed by `versions`, newest first."""
        base, _extra = split_virtual(package)
        seen: set[Version] = set()
        matching: list[PackageCandidate] = []
        for candidate in self._candidates(base):
            if candidate.version in seen or not versions.contains(candidate.version):
                continue
            seen.add(candidate.version)
            matching.append(candidate)

        finals = [c for c in matching if not c.is_prerelease]
        match self._options.prerelease:
            case PreReleasePolicy.ALLOW:
                return matching
            case PreReleasePolicy.DISALLOW:
                return finals
            case _:
                return finals or matching

    def _version_count(self, term: Term) -> int:
        if term.package == ROOT:
            return 1
        try:
            return len(self._versions_in(term.package, term.versions))
        except PackageNotFoundError:
            return 0

    # ---- dependencies ----

    def _applies(self, requirement: Requirement, extra: str) -> bool:
        return requirement.marker.evaluate({**self._facts[0], "extra": extra})

    def _dependencies(self, package: str, candidate: PackageCandidate | None) -> dict[str, VersionRange]:
        deps: dict[str, VersionRange] = {}

        def _require(target: str, versions: VersionRange) -> None:
            if target == package:
                return
            prior = deps.get(target)
            deps[target] = versions if prior is None else prior.intersect(versions)

        if package == ROOT:
            requirements = [r for r in self._root_requirements if self._applies(r, "")]
        else:
            base, extra = split_virtual(package)
            declared = self._cache.declared_requirements(candidate)
            if extra is None:
                requirements = [r for r in declared if self._applies(r, "")]
            else:
                _require(base, VersionRange.exact(candidate.version))
                requirements = [r for r in declared if self._applies(r, extra) and not self._applies(r, "")]

        for req in sorted(requirements, key=Requirement.sort_key):
            req = self._policy.apply(req)
            _require(req.name, req.specifier)
            for extra_name in sorted(req.extras):
                _require(virtual_name(req.name, extra_name), req.specifier)
        return deps

    # ---- decisions ----

    def _choose_package_version(self) -> str | None:
        unsatisfied = self._solution.unsatisfied()
        if not unsatisfied:
            return None

        self._cache.prefetch(
            sorted({split_virtual(t.package)[0] for t in unsatisfied if t.package != ROOT}))
        term = min(unsatisfied, key=lambda t: (self._version_count(t), t.package))
        package = term.package

        if package == ROOT:
            version, candidate = ROOT_VERSION, None
        else:
            try:
                versions = self._versions_in(package, term.versions)
            except PackageNotFoundError as e:
                self._add(Incompatibility.create(
                    [Term(package, VersionRange.full())], CauseKind.NOT_FOUND, reason=str(e)))
                return package
            if not versions:
                excluded = self._excluded.get(split_virtual(package)[0], 0)
                reason = f"{excluded} unsupported on {self.label}" if excluded else ""
                self._add(Incompatibility.create([term], CauseKind.NO_VERSIONS, reason=reason))
                return package
            candidate = versions[0]
            version = candidate.version

        key = (package, version)
        incompats = self._expanded.get(key)
        if incompats is None:
            try:
                deps = self._dependencies(package, candidate)
            except TransientFetchError:
                raise
            except MetadataFetchError as e:
                # this version only; other versions of the package stay eligible
                self._add(Incompatibility.create(
                    [Term(package, VersionRange.exact(version))], CauseKind.UNAVAILABLE, reason=str(e)))
                return package
            incompats = [
                Incompatibility.create(
                    [Term(package, VersionRange.exact(version)), Term(target, versions, False)],
                    CauseKind.DEPENDENCY)
                for target, versions in deps.items()]
            for incompat in incompats:
                self._add(incompat)
            self._expanded[key] = incompats
            self._dependencies_of[key] = frozenset(split_virtual(t)[0] for t in deps if t != ROOT)
            self._cache.prefetch(sorted({split_virtual(t)[0] for t in deps}))
        if candidate is not None:
            self._chosen[key] = candidate

        conflict = any(
            all(t.package == package or self._solution.satisfies(t) for t in incompat.terms)
            for incompat in incompats)
        if not conflict:
            self._solution.decide(package, version)
            self._reporter.deciding(package, version)
        return package
