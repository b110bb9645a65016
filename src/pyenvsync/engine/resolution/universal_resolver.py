from __future__ import annotations

from collections.abc import Iterable, Sequence

from pyenvsync.engine.audit.audit_event_model import AuditEvent, EventType, StageType, audit, record
from pyenvsync.engine.requirements.project_declarations import PolicyRequirements
from pyenvsync.engine.resolution.cancellation import CancellationToken
from pyenvsync.engine.resolution.candidate_cache import CandidateCache
from pyenvsync.engine.resolution.failure_report import explain
from pyenvsync.engine.resolution.incompatibility import ROOT, CauseKind, Incompatibility, Term
from pyenvsync.engine.resolution.marker_partition import PartitionBlock, compute_partition
from pyenvsync.engine.resolution.providers import PackageMetadataProvider
from pyenvsync.engine.resolution.reporter import AuditReporter
from pyenvsync.engine.resolution.solver import ROOT_VERSION, PubGrubSolver, SelectedPackage, SolverOptions
from pyenvsync.errors import ConflictError, ConstraintError
from pyenvsync.model.constraint.target_environment_model import TargetEnvironment
from pyenvsync.model.constraint.version_range_model import VersionRange
from pyenvsync.model.lock.solution_model import MarkerRegion, ResolvedPackage, RootEntry, Solution
from pyenvsync.model.requirement.requirement_model import Requirement


def _check_root_ranges(requirements: Iterable[Requirement], policy: PolicyRequirements) -> None:
    """Fails fast when policy leaves a root requirement with no possible version."""
    for req in requirements:
        effective = policy.apply(req)
        if effective.specifier.is_empty():
            incompat = Incompatibility.create(
                [Term(ROOT, VersionRange.exact(ROOT_VERSION)), Term(req.name, VersionRange.empty(), False)],
                CauseKind.DEPENDENCY)
            raise ConflictError(explain(incompat), incompat)


def _merge(
        requirements: Sequence[Requirement],
        forks: Sequence[tuple[PartitionBlock, dict[str, SelectedPackage]]],
        environments: Sequence[TargetEnvironment]) -> Solution:
    members: dict[tuple, list[TargetEnvironment]] = {}
    for block, selected in forks:
        for name, package in selected.items():
            candidate = package.candidate
            key = (name, candidate.version, candidate.source, tuple(sorted(package.dependencies)))
            members.setdefault(key, []).extend(block.environments)

    packages = [
        ResolvedPackage(
            name=name,
            version=version,
            marker_region=MarkerRegion.describe(envs, environments).marker,
            source=source,
            dependencies=dependencies)
        for (name, version, source, dependencies), envs in members.items()]
    roots = [RootEntry(root=req.root, name=req.name, marker=req.marker) for req in requirements]
    return Solution.create(packages, roots, environments)


@audit(StageType.RESOLVE, "universal")
def resolve(
        requirements: Iterable[Requirement],
        provider: PackageMetadataProvider,
        environments: Iterable[TargetEnvironment],
        *,
        policy_requirements: PolicyRequirements | None = None,
        options: SolverOptions | None = None,
        token: CancellationToken | None = None,
        workers: int = 8,
        retries: int = 3) -> Solution:
    """
    Resolves root requirements into one solution covering every target
    environment.

    The environments are partitioned into blocks that agree on every marker
    in the graph and each block is solved on its own. Entries that are the
    same in several blocks are merged, and each entry's region is the
    smallest marker that selects its blocks among the configured targets.
    A single environment always yields a single-region solution.

    Args:
        requirements (Iterable[Requirement]): The root requirements.
        provider (PackageMetadataProvider): Where candidates come from.
        environments (Iterable[TargetEnvironment]): Configured targets.
        policy_requirements (PolicyRequirements | None): Constraints and
            overrides applied to every requirement.
        options (SolverOptions | None): Solver tuning.
        token (CancellationToken | None): Checked at every propagation step.
        workers (int): Concurrent candidate fetches.
        retries (int): Retries for transient fetch errors.

    Returns:
        Solution: The merged solution.

    Raises:
        ConflictError: If any block has no solution. With more than one
            block the explanation names the affected environments.
        ConstraintError: If no environment is configured.
    """
    requirements = sorted(set(requirements), key=Requirement.sort_key)
    environments = sorted({e.key: e for e in environments}.values(), key=lambda e: e.key)
    if not environments:
        raise ConstraintError("no target environments configured")
    policy = policy_requirements or PolicyRequirements()
    token = token or CancellationToken()

    record(AuditEvent.make(
        StageType.RESOLVE,
        EventType.INPUT,
        substage="universal",
        message=f"Resolving {len(requirements)} root requirements for {len(environments)} environments",
        payload={
            "requirements": [str(r) for r in requirements],
            "environments": [e.key for e in environments],
            **policy.to_mapping(),
        }))
    _check_root_ranges(requirements, policy)

    forks: list[tuple[PartitionBlock, dict[str, SelectedPackage]]] = []
    with CandidateCache(provider, workers=workers, retries=retries) as cache:
        blocks = compute_partition(requirements, cache, environments)
        for block in blocks:
            token.raise_if_cancelled()
            solver = PubGrubSolver(
                requirements,
                cache,
                block.environments,
                options=options,
                policy_requirements=policy,
                token=token,
                reporter=AuditReporter())
            try:
                selected = solver.solve()
            except ConflictError as e:
                if len(blocks) == 1:
                    raise
                raise ConflictError(f"On {', '.join(block.keys)}:\n{e.explanation}", e.incompatibility) from e
            forks.append((block, selected))

    solution = _merge(requirements, forks, environments)
    record(AuditEvent.make(
        StageType.RESOLVE,
        EventType.OUTPUT,
        substage="universal",
        message=f"Locked {len(solution.packages)} entries across {len(forks)} forks",
        payload={"forks": [list(block.keys) for block, _ in forks]}))
    return solution
