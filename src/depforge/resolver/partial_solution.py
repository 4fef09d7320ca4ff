"""The assignment trail: decisions and derivations with their decision levels."""
from __future__ import annotations

from typing import Dict, List, Optional, Set

from packaging.version import Version

from ..versioning.ranges import VersionRange
from .incompatibility import Incompatibility
from .terms import PackageRef, SetRelation, Term


class Assignment(Term):
    """A term placed on the trail, either decided or derived from ``cause``."""

    __slots__ = ("decision_level", "index", "cause")

    def __init__(self, term: Term, decision_level: int, index: int, cause: Optional[Incompatibility] = None):
        super().__init__(term.package, term.constraint, term.positive)
        self.decision_level = decision_level
        self.index = index
        self.cause = cause

    @property
    def is_decision(self) -> bool:
        return self.cause is None


class PartialSolution:
    """Ordered assignments plus per-package summaries of what they imply.

    Decision levels are indices: level ``n`` holds everything assigned after
    the ``n``-th decision. Backtracking truncates the trail and rebuilds the
    summaries of the packages it touched; nothing recurses.
    """

    def __init__(self) -> None:
        self._assignments: List[Assignment] = []
        self._decisions: Dict[PackageRef, Version] = {}
        self._positive: Dict[PackageRef, Term] = {}
        self._negative: Dict[PackageRef, Term] = {}
        self.attempted_solutions = 1
        self._backtracking = False

    @property
    def decisions(self) -> Dict[PackageRef, Version]:
        return dict(self._decisions)

    @property
    def decision_level(self) -> int:
        return len(self._decisions)

    def unsatisfied(self) -> List[Term]:
        """Positive terms for packages that are required but not yet decided."""
        return [term for package, term in self._positive.items() if package not in self._decisions]

    def positive_term(self, package: PackageRef) -> Optional[Term]:
        return self._positive.get(package)

    def decide(self, package: PackageRef, version: Version) -> None:
        if self._backtracking:
            self.attempted_solutions += 1
        self._backtracking = False
        self._decisions[package] = version
        self._assign(Assignment(Term(package, VersionRange.exact(version)), self.decision_level, len(self._assignments)))

    def derive(self, term: Term, cause: Incompatibility) -> None:
        self._assign(Assignment(term, self.decision_level, len(self._assignments), cause))

    def _assign(self, assignment: Assignment) -> None:
        self._assignments.append(assignment)
        self._register(assignment)

    def backtrack(self, decision_level: int) -> None:
        """Drop every assignment made above ``decision_level``."""
        self._backtracking = True
        touched: Set[PackageRef] = set()
        while self._assignments and self._assignments[-1].decision_level > decision_level:
            removed = self._assignments.pop()
            touched.add(removed.package)
            if removed.is_decision:
                del self._decisions[removed.package]
        for package in touched:
            self._positive.pop(package, None)
            self._negative.pop(package, None)
        for assignment in self._assignments:
            if assignment.package in touched:
                self._register(assignment)

    def _register(self, assignment: Term) -> None:
        package = assignment.package
        positive = self._positive.get(package)
        if positive is not None:
            merged = positive.intersect(assignment)
            if merged is not None:
                self._positive[package] = merged
            else:
                self._positive[package] = Term(package, VersionRange.empty(), True)
            return
        negative = self._negative.get(package)
        term = assignment if negative is None else assignment.intersect(negative)
        if term is None:
            term = Term(package, VersionRange.empty(), True)
        if term.positive:
            self._negative.pop(package, None)
            self._positive[package] = term
        else:
            self._negative[package] = term

    def satisfier(self, term: Term) -> Assignment:
        """The earliest assignment after which ``term`` is satisfied."""
        accumulated: Optional[Term] = None
        for assignment in self._assignments:
            if assignment.package != term.package:
                continue
            accumulated = assignment if accumulated is None else accumulated.intersect(assignment)
            if accumulated is None or accumulated.satisfies(term):
                return assignment
        raise RuntimeError(f"{term} is not satisfied by the current assignments")

    def satisfies(self, term: Term) -> bool:
        return self.relation(term) is SetRelation.SUBSET

    def relation(self, term: Term) -> SetRelation:
        positive = self._positive.get(term.package)
        if positive is not None:
            return positive.relation(term)
        negative = self._negative.get(term.package)
        if negative is None:
            return SetRelation.OVERLAPPING
        return negative.relation(term)
