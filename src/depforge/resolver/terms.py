"""Package references and terms, the atoms of incompatibilities."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..versioning.ranges import VersionRange


@dataclass(frozen=True, order=True)
class PackageRef:
    """A node in the solver's package space.

    ``name`` is the normalized distribution name; ``extra`` turns the
    reference into the virtual package ``name[extra]``, which depends on
    ``name`` at the same version plus the extra's own requirements. The
    root of the resolution has an empty name.
    """

    name: str
    extra: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return not self.name

    @property
    def base(self) -> "PackageRef":
        return PackageRef(self.name) if self.extra else self

    def __str__(self) -> str:
        if self.is_root:
            return "root"
        if self.extra:
            return f"{self.name}[{self.extra}]"
        return self.name


ROOT = PackageRef("")


class SetRelation(Enum):
    """How the versions allowed by one term relate to another's."""

    SUBSET = "subset"
    DISJOINT = "disjoint"
    OVERLAPPING = "overlapping"


class Term:
    """A statement about a package: selected within ``constraint`` (positive)
    or not selected within it (negative)."""

    __slots__ = ("package", "constraint", "positive")

    def __init__(self, package: PackageRef, constraint: VersionRange, positive: bool = True):
        self.package = package
        self.constraint = constraint
        self.positive = positive

    @property
    def inverse(self) -> "Term":
        return Term(self.package, self.constraint, not self.positive)

    def satisfies(self, other: "Term") -> bool:
        return self.package == other.package and self.relation(other) is SetRelation.SUBSET

    def relation(self, other: "Term") -> SetRelation:
        """Relation of this term's solutions to ``other``'s (same package)."""
        mine, theirs = self.constraint, other.constraint
        if other.positive:
            if self.positive:
                if theirs.allows_all(mine):
                    return SetRelation.SUBSET
                if not mine.allows_any(theirs):
                    return SetRelation.DISJOINT
                return SetRelation.OVERLAPPING
            # "not mine" excludes everything "theirs" allows
            if mine.allows_all(theirs):
                return SetRelation.DISJOINT
            return SetRelation.OVERLAPPING
        if self.positive:
            if not theirs.allows_any(mine):
                return SetRelation.SUBSET
            if theirs.allows_all(mine):
                return SetRelation.DISJOINT
            return SetRelation.OVERLAPPING
        if mine.allows_all(theirs):
            return SetRelation.SUBSET
        return SetRelation.OVERLAPPING

    def intersect(self, other: "Term") -> Optional["Term"]:
        """The term satisfied by both, or None when no version can satisfy both."""
        if self.positive != other.positive:
            positive, negative = (self, other) if self.positive else (other, self)
            return self._non_empty(positive.constraint.difference(negative.constraint), True)
        if self.positive:
            return self._non_empty(self.constraint.intersect(other.constraint), True)
        return self._non_empty(self.constraint.union(other.constraint), False)

    def difference(self, other: "Term") -> Optional["Term"]:
        return self.intersect(other.inverse)

    def _non_empty(self, constraint: VersionRange, positive: bool) -> Optional["Term"]:
        if constraint.is_empty():
            return None
        return Term(self.package, constraint, positive)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Term):
            return NotImplemented
        return (self.package, self.constraint, self.positive) == (other.package, other.constraint, other.positive)

    def __hash__(self) -> int:
        return hash((self.package, self.constraint, self.positive))

    def describe(self) -> str:
        """The package and its range, without polarity."""
        if self.package.is_root:
            return "root"
        if self.constraint.is_any():
            return f"every version of {self.package}"
        return f"{self.package} {self.constraint}"

    def __str__(self) -> str:
        text = self.describe()
        return text if self.positive else f"not {text}"

    def __repr__(self) -> str:
        return f"Term({self})"
