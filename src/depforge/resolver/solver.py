"""Conflict-driven version solving (PubGrub).

The solver keeps a set of incompatibilities and a ``PartialSolution``. Each
step propagates every incompatibility touching the last changed package,
resolves conflicts into new, more general incompatibilities (backtracking
to the level where they become unit), and finally decides one version of
one package. Package and version choice depend only on the solver state,
never on the order in which network responses arrive: metadata may be
fetched concurrently, but it is consumed one decision at a time.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from packaging.version import Version

from ..common.logging_utils import extra_context, is_debug_enabled, Timer
from ..constants import PrereleaseMode, UpgradePolicy
from ..errors import MetadataUnavailable, NotFound, ResolutionConflict
from ..registry.models import Candidate, Metadata
from ..registry.provider import CandidateSequence, DistributionProvider, retrieve_exception
from ..versioning.models import Environment, RegistrySource, Requirement, SourceSpec
from ..versioning.ranges import VersionRange
from .graph import Edge, Node, ResolutionGraph
from .incompatibility import (
    CONSTRAINT,
    DEPENDENCY,
    NO_VERSIONS,
    ROOT_CAUSE,
    ConflictCause,
    Incompatibility,
    UnavailableCause,
)
from .partial_solution import PartialSolution
from .prefetch import BatchPrefetcher
from .report import explain
from .selector import CandidateSelector
from .terms import ROOT, PackageRef, SetRelation, Term

logger = logging.getLogger(__name__)

ROOT_VERSION = Version("0")
_CONFLICT = object()


class VersionSolver:
    """One resolution run. Use ``Resolver`` for the reusable entry point."""

    def __init__(
        self,
        provider: DistributionProvider,
        requirements: Sequence[Requirement],
        *,
        environment: Environment,
        selector: CandidateSelector,
        constraints: Sequence[Requirement] = (),
    ):
        self.provider = provider
        self.environment = environment
        self.selector = selector
        self.requirements = list(requirements)
        self.constraints = list(constraints)
        self.solution = PartialSolution()
        self.prefetcher = BatchPrefetcher(provider, selector)
        self._incompatibilities: Dict[PackageRef, List[Incompatibility]] = {}
        self._discovered: Dict[PackageRef, int] = {}
        self._sources: Dict[str, SourceSpec] = {}
        self._sequences: Dict[str, CandidateSequence] = {}
        self._missing: Set[str] = set()
        self._explicit_prerelease: Set[str] = set()
        self._dependencies: Dict[Tuple[PackageRef, Version], List[Requirement]] = {}
        self._candidates: Dict[Tuple[PackageRef, Version], Candidate] = {}
        self._listed: Dict[Tuple[PackageRef, Version], List[Incompatibility]] = {}
        self._background: List[asyncio.Future] = []

    # Entry point

    async def solve(self) -> ResolutionGraph:
        timer = Timer()
        with timer:
            try:
                await self._prepare_root()
                self._add_incompatibility(Incompatibility([Term(ROOT, VersionRange.any(), False)], ROOT_CAUSE))
                next_package: Optional[PackageRef] = ROOT
                while next_package is not None:
                    self._propagate(next_package)
                    next_package = await self._choose_package_version()
                graph = self._result()
            finally:
                self._cancel_background()
        logger.info(
            "Resolved %d package(s) in %d ms (%d attempt(s))",
            len(graph),
            timer.duration_ms(),
            self.solution.attempted_solutions,
            extra=extra_context(event="resolve", component="resolver", outcome="success",
                                count=len(graph), duration_ms=timer.duration_ms()),
        )
        return graph

    async def _prepare_root(self) -> None:
        """Name unnamed requirements and register explicit sources."""
        named = []
        for requirement in self.requirements:
            if not requirement.name:
                requirement = await self.provider.identify(requirement)
            named.append(requirement)
        self.requirements = named
        for requirement in self.requirements:
            if requirement.source is not None and not isinstance(requirement.source, RegistrySource):
                reason = self._register_source(requirement.name, requirement.source)
                if reason:
                    raise ResolutionConflict(None, [f"Because {reason}, version solving failed."], [requirement.name])

    # Propagation and conflict resolution

    def _add_incompatibility(self, incompatibility: Incompatibility) -> None:
        if is_debug_enabled(logger):
            logger.debug("fact: %s", incompatibility)
        for term in incompatibility.terms:
            self._incompatibilities.setdefault(term.package, []).append(incompatibility)
            if term.package not in self._discovered:
                self._discovered[term.package] = len(self._discovered)

    def _propagate(self, package: PackageRef) -> None:
        changed = [package]
        while changed:
            current = changed.pop(0)
            # Newest first: derived incompatibilities are more general.
            for incompatibility in reversed(self._incompatibilities.get(current, [])):
                result = self._propagate_incompatibility(incompatibility)
                if result is _CONFLICT:
                    root_cause = self._resolve_conflict(incompatibility)
                    changed = []
                    derived = self._propagate_incompatibility(root_cause)
                    if isinstance(derived, PackageRef):
                        changed.append(derived)
                    break
                if isinstance(result, PackageRef) and result not in changed:
                    changed.append(result)

    def _propagate_incompatibility(self, incompatibility: Incompatibility):
        unsatisfied: Optional[Term] = None
        for term in incompatibility.terms:
            relation = self.solution.relation(term)
            if relation is SetRelation.DISJOINT:
                return None
            if relation is SetRelation.OVERLAPPING:
                if unsatisfied is not None:
                    return None
                unsatisfied = term
        if unsatisfied is None:
            return _CONFLICT
        if is_debug_enabled(logger):
            logger.debug("derived: %s", unsatisfied.inverse)
        self.solution.derive(unsatisfied.inverse, incompatibility)
        return unsatisfied.package

    def _resolve_conflict(self, incompatibility: Incompatibility) -> Incompatibility:
        if is_debug_enabled(logger):
            logger.debug("conflict: %s", incompatibility)
        new_incompatibility = False
        while not incompatibility.is_failure:
            most_recent_term: Optional[Term] = None
            most_recent_satisfier = None
            difference: Optional[Term] = None
            previous_level = 1
            for term in incompatibility.terms:
                satisfier = self.solution.satisfier(term)
                if most_recent_satisfier is None:
                    most_recent_term, most_recent_satisfier = term, satisfier
                elif most_recent_satisfier.index < satisfier.index:
                    previous_level = max(previous_level, most_recent_satisfier.decision_level)
                    most_recent_term, most_recent_satisfier = term, satisfier
                    difference = None
                else:
                    previous_level = max(previous_level, satisfier.decision_level)
                if most_recent_term is term:
                    difference = most_recent_satisfier.difference(most_recent_term)
                    if difference is not None:
                        previous_level = max(
                            previous_level, self.solution.satisfier(difference.inverse).decision_level
                        )

            if previous_level < most_recent_satisfier.decision_level or most_recent_satisfier.cause is None:
                self.solution.backtrack(previous_level)
                if new_incompatibility:
                    self._add_incompatibility(incompatibility)
                return incompatibility

            terms = [t for t in incompatibility.terms if t is not most_recent_term]
            terms.extend(t for t in most_recent_satisfier.cause.terms if t.package != most_recent_satisfier.package)
            if difference is not None:
                terms.append(difference.inverse)
            incompatibility = Incompatibility(terms, ConflictCause(incompatibility, most_recent_satisfier.cause))
            new_incompatibility = True
            if is_debug_enabled(logger):
                logger.debug("! which is caused by %s", incompatibility)

        lines = explain(incompatibility)
        logger.info(
            "Resolution failed",
            extra=extra_context(event="resolve", component="resolver", outcome="conflict",
                                packages=",".join(incompatibility.packages())),
        )
        raise ResolutionConflict(incompatibility, lines, incompatibility.packages())

    # Decisions

    def _sequence(self, name: str) -> CandidateSequence:
        sequence = self._sequences.get(name)
        if sequence is None:
            source = self._sources.get(name)
            sequence = self.provider.candidates(name, source)
            self._sequences[name] = sequence
        return sequence

    async def _load(self, name: str) -> Optional[CandidateSequence]:
        if name in self._missing:
            return None
        sequence = self._sequence(name)
        try:
            return await sequence.load()
        except NotFound as exc:
            logger.info("%s", exc)
            self._missing.add(name)
            return None

    def _is_url(self, name: str) -> bool:
        return name in self._sources

    async def _choose_package_version(self) -> Optional[PackageRef]:
        unsatisfied = self.solution.unsatisfied()
        if not unsatisfied:
            return None

        root_term = next((t for t in unsatisfied if t.package.is_root), None)
        if root_term is not None:
            for incompatibility in self._root_incompatibilities():
                self._add_incompatibility(incompatibility)
            self.solution.decide(ROOT, ROOT_VERSION)
            return ROOT

        for term in unsatisfied:
            self._warm(term.package.name)
        counts: Dict[PackageRef, int] = {}
        for term in sorted(unsatisfied, key=lambda t: self._discovered.get(t.package, 0)):
            sequence = await self._load(term.package.name)
            counts[term.package] = 0 if sequence is None else self.selector.count(
                sequence, term.constraint, term.package.name in self._explicit_prerelease
            )
        term = min(
            unsatisfied,
            key=lambda t: (
                0 if self._is_url(t.package.name) else 1,
                counts[t.package],
                self._discovered.get(t.package, 0),
            ),
        )
        package = term.package
        sequence = await self._load(package.name)
        candidate = None
        if sequence is not None:
            candidate = self.selector.select(sequence, term.constraint, package.name in self._explicit_prerelease)
        if candidate is None:
            self._add_incompatibility(Incompatibility([Term(package, term.constraint)], NO_VERSIONS))
            return package

        if is_debug_enabled(logger):
            logger.debug("selecting %s %s", package, candidate.version)
        self.prefetcher.version_tried(package)
        self.prefetcher.prefetch(package, sequence, term.constraint, candidate.version)

        key = (package, candidate.version)
        incompatibilities = self._listed.get(key)
        if incompatibilities is None:
            incompatibilities = await self._incompatibilities_for(package, candidate)
            self._listed[key] = incompatibilities
            for incompatibility in incompatibilities:
                self._add_incompatibility(incompatibility)
        conflict = any(
            all(t.package == package or self.solution.satisfies(t) for t in incompatibility.terms)
            for incompatibility in incompatibilities
        )
        if not conflict:
            self.solution.decide(package, candidate.version)
            self._candidates[key] = candidate
        return package

    def _root_incompatibilities(self) -> List[Incompatibility]:
        root_term = Term(ROOT, VersionRange.exact(ROOT_VERSION))
        applicable = [r for r in self.requirements if r.applies_to(self.environment)]
        self._dependencies[(ROOT, ROOT_VERSION)] = applicable
        result = [
            Incompatibility([root_term, Term(ref, constraint, False)], DEPENDENCY)
            for ref, constraint in self._dependency_terms(applicable)
        ]
        for constraint in self.constraints:
            if not constraint.name or not constraint.applies_to(self.environment):
                continue
            allowed = VersionRange.from_specifier(constraint.specifier)
            if allowed.is_any():
                continue
            self._note_prerelease(constraint)
            result.append(Incompatibility(
                [Term(ROOT, VersionRange.any()), Term(PackageRef(constraint.name), allowed.complement())],
                CONSTRAINT,
            ))
        return result

    def _dependency_terms(self, requirements: Iterable[Requirement]) -> List[Tuple[PackageRef, VersionRange]]:
        """(package, range) pairs, merged per package; extras become virtual packages."""
        merged: Dict[PackageRef, VersionRange] = {}
        for requirement in requirements:
            self._note_prerelease(requirement)
            constraint = VersionRange.from_specifier(requirement.specifier)
            for ref in [PackageRef(requirement.name)] + [PackageRef(requirement.name, e) for e in sorted(requirement.extras)]:
                merged[ref] = merged[ref].intersect(constraint) if ref in merged else constraint
                self._warm(ref.name)
        return list(merged.items())

    def _note_prerelease(self, requirement: Requirement) -> None:
        if requirement.specifier.prereleases:
            self._explicit_prerelease.add(requirement.name)

    def _register_source(self, name: str, source: SourceSpec) -> Optional[str]:
        """Pin ``name`` to ``source``; returns a reason when that contradicts an earlier pin."""
        existing = self._sources.get(name)
        if existing is None:
            if name in self._sequences:
                return f"{name} is required from {source.to_url()} after it was already taken from the index"
            self._sources[name] = source
            return None
        if existing != source:
            return f"{name} is required from both {existing.to_url()} and {source.to_url()}"
        return None

    async def _incompatibilities_for(self, package: PackageRef, candidate: Candidate) -> List[Incompatibility]:
        version = candidate.version
        version_term = Term(package, VersionRange.exact(version))
        python = self.environment.python_version

        if not candidate.allows_python(python):
            reason = f"requires Python {candidate.requires_python()}"
            return [Incompatibility([version_term], UnavailableCause(reason))]
        try:
            metadata = await self.provider.metadata(candidate)
        except (NotFound, MetadataUnavailable) as exc:
            logger.warning(
                "Skipping %s: %s",
                candidate,
                exc,
                extra=extra_context(event="metadata", component="resolver", outcome="unavailable",
                                    package=candidate.name, version=str(version)),
            )
            return [Incompatibility([version_term], UnavailableCause(str(exc)))]
        if metadata.requires_python and not metadata.requires_python.contains(python, prereleases=True):
            reason = f"requires Python {metadata.requires_python}"
            return [Incompatibility([version_term], UnavailableCause(reason))]

        requirements = self._metadata_requirements(package, metadata)
        for requirement in requirements:
            if requirement.source is not None and not isinstance(requirement.source, RegistrySource):
                reason = self._register_source(requirement.name, requirement.source)
                if reason:
                    return [Incompatibility([version_term], UnavailableCause(reason))]
        self._dependencies[(package, version)] = requirements

        result = []
        if package.extra:
            result.append(Incompatibility(
                [version_term, Term(package.base, VersionRange.exact(version), False)], DEPENDENCY
            ))
        for ref, constraint in self._dependency_terms(requirements):
            if ref == package or ref == package.base:
                continue
            result.append(Incompatibility([version_term, Term(ref, constraint, False)], DEPENDENCY))
        return result

    def _metadata_requirements(self, package: PackageRef, metadata: Metadata) -> List[Requirement]:
        if not package.extra:
            return metadata.dependencies(self.environment)
        if package.extra not in metadata.provides_extra:
            logger.warning("%s %s does not provide the extra '%s'", package.name, metadata.version, package.extra)
        return metadata.extra_dependencies(package.extra, self.environment)

    # Background work

    def _warm(self, name: str) -> None:
        """Start listing ``name`` and fetching metadata of its newest candidate."""
        if not name or name in self._sequences or name in self._missing:
            return
        sequence = self._sequence(name)
        sequence.start()
        task = asyncio.ensure_future(self._warm_newest(sequence))
        task.add_done_callback(retrieve_exception)
        self._background.append(task)

    async def _warm_newest(self, sequence: CandidateSequence) -> None:
        await sequence.load()
        candidate = self.selector.select(sequence, VersionRange.any(), sequence.name in self._explicit_prerelease)
        if candidate is not None and candidate.allows_python(self.environment.python_version):
            self.provider.prefetch(candidate)
            self.prefetcher.requested.append(candidate)

    def _cancel_background(self) -> None:
        for task in self._background:
            if not task.done():
                task.cancel()
        self._background = []
        cancelled = self.provider.cancel_pending(self.prefetcher.requested)
        if cancelled:
            logger.debug("Cancelled %d outstanding prefetch(es)", cancelled)

    # Result

    def _result(self) -> ResolutionGraph:
        decisions = self.solution.decisions
        extras: Dict[str, Set[str]] = {}
        for ref in decisions:
            if ref.extra:
                extras.setdefault(ref.name, set()).add(ref.extra)
        nodes = []
        for ref, version in decisions.items():
            if ref.is_root or ref.extra:
                continue
            candidate = self._candidates.get((ref, version))
            nodes.append(Node(
                name=ref.name,
                version=version,
                extras=frozenset(extras.get(ref.name, ())),
                source=candidate.source if candidate is not None else RegistrySource(),
                candidate=candidate,
            ))
        edges = []
        for ref, version in decisions.items():
            parent = None if ref.is_root else ref.name
            for requirement in self._dependencies.get((ref, version), []):
                if requirement.name == ref.name:
                    continue
                edges.append(Edge(parent, requirement.name, requirement))
        return ResolutionGraph(nodes, edges, self.environment)


class Resolver:
    """Resolves root requirements against a ``DistributionProvider``.

    ``preferences`` maps package names to previously locked versions; they
    are tried first unless ``upgrade`` releases them (``UpgradePolicy.ALL``,
    or ``UpgradePolicy.PACKAGES`` with ``upgrade_packages``). ``constraints``
    restrict versions of packages without requiring them.
    """

    def __init__(
        self,
        provider: DistributionProvider,
        *,
        environment: Optional[Environment] = None,
        constraints: Sequence[Requirement] = (),
        preferences: Optional[Mapping[str, Union[str, Version]]] = None,
        upgrade: UpgradePolicy = UpgradePolicy.NONE,
        upgrade_packages: Iterable[str] = (),
        prereleases: PrereleaseMode = PrereleaseMode.IF_NECESSARY,
    ):
        self.provider = provider
        self.environment = environment or provider.environment
        self.constraints = list(constraints)
        self.selector = CandidateSelector(
            prereleases=prereleases,
            preferences=preferences,
            upgrade=upgrade,
            upgrade_packages=upgrade_packages,
        )

    async def resolve(self, requirements: Sequence[Requirement]) -> ResolutionGraph:
        solver = VersionSolver(
            self.provider,
            requirements,
            environment=self.environment,
            selector=self.selector,
            constraints=self.constraints,
        )
        return await solver.solve()

