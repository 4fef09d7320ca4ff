"""Version sets as unions of disjoint intervals over PEP 440 versions.

The solver needs a set algebra (intersection, union, complement) over
versions that it has not necessarily seen yet, so specifiers are converted
into intervals up front. Known approximations of PEP 440 semantics:
``==V`` does not match local versions of ``V`` and ``>V`` admits post
releases of ``V``.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple, Union

from packaging.specifiers import Specifier, SpecifierSet
from packaging.version import InvalidVersion, Version

# (version or None for unbounded, inclusive)
Bound = Tuple[Optional[Version], bool]
Interval = Tuple[Bound, Bound]

_UNBOUNDED: Bound = (None, False)


def _release_version(epoch: int, release: Iterable[int], suffix: str = "") -> Version:
    text = ".".join(str(part) for part in release) + suffix
    if epoch:
        text = f"{epoch}!{text}"
    return Version(text)


def _lower_gt(a: Bound, b: Bound) -> bool:
    """True when lower bound ``a`` is strictly tighter (greater) than ``b``."""
    if a[0] is None:
        return False
    if b[0] is None:
        return True
    if a[0] != b[0]:
        return a[0] > b[0]
    return b[1] and not a[1]


def _upper_lt(a: Bound, b: Bound) -> bool:
    """True when upper bound ``a`` is strictly tighter (smaller) than ``b``."""
    if a[0] is None:
        return False
    if b[0] is None:
        return True
    if a[0] != b[0]:
        return a[0] < b[0]
    return b[1] and not a[1]


def _is_empty(interval: Interval) -> bool:
    (low, low_inc), (high, high_inc) = interval
    if low is None or high is None:
        return False
    if low < high:
        return False
    if low == high:
        return not (low_inc and high_inc)
    return True


def _lower_key(bound: Bound):
    version, inclusive = bound
    if version is None:
        return (0, None, 0)
    return (1, version, 0 if inclusive else 1)


def _touches(upper: Bound, lower: Bound) -> bool:
    """True when an interval ending at ``upper`` overlaps or abuts one starting at ``lower``."""
    if upper[0] is None or lower[0] is None:
        return True
    if lower[0] < upper[0]:
        return True
    if lower[0] == upper[0]:
        return upper[1] or lower[1]
    return False


class VersionRange:
    """Immutable union of disjoint, sorted version intervals."""

    __slots__ = ("_intervals",)

    def __init__(self, intervals: Iterable[Interval] = ()):
        self._intervals: Tuple[Interval, ...] = self._normalize(intervals)

    @staticmethod
    def _normalize(intervals: Iterable[Interval]) -> Tuple[Interval, ...]:
        items = sorted((i for i in intervals if not _is_empty(i)), key=lambda i: _lower_key(i[0]))
        merged: List[Interval] = []
        for low, high in items:
            if merged and _touches(merged[-1][1], low):
                prev_low, prev_high = merged[-1]
                new_high = prev_high if _upper_lt(high, prev_high) else high
                if prev_high[0] is not None and high[0] is not None and prev_high[0] == high[0]:
                    new_high = (high[0], prev_high[1] or high[1])
                merged[-1] = (prev_low, new_high)
            else:
                merged.append((low, high))
        return tuple(merged)

    # Constructors

    @classmethod
    def any(cls) -> "VersionRange":
        return cls([(_UNBOUNDED, _UNBOUNDED)])

    @classmethod
    def empty(cls) -> "VersionRange":
        return cls()

    @classmethod
    def exact(cls, version: Union[str, Version]) -> "VersionRange":
        if isinstance(version, str):
            version = Version(version)
        return cls([((version, True), (version, True))])

    @classmethod
    def at_least(cls, version: Version, inclusive: bool = True) -> "VersionRange":
        return cls([((version, inclusive), _UNBOUNDED)])

    @classmethod
    def below(cls, version: Version, inclusive: bool = False) -> "VersionRange":
        return cls([(_UNBOUNDED, (version, inclusive))])

    @classmethod
    def from_specifier(cls, specifier: Union[str, SpecifierSet, Specifier]) -> "VersionRange":
        """Convert a specifier (set) into a range; an empty set is ``any``."""
        if isinstance(specifier, str):
            specifier = SpecifierSet(specifier)
        if isinstance(specifier, Specifier):
            return _single_specifier(specifier)
        result = cls.any()
        for spec in specifier:
            result = result.intersect(_single_specifier(spec))
        return result

    # Set algebra

    @property
    def intervals(self) -> Tuple[Interval, ...]:
        return self._intervals

    def is_empty(self) -> bool:
        return not self._intervals

    def is_any(self) -> bool:
        return len(self._intervals) == 1 and self._intervals[0] == (_UNBOUNDED, _UNBOUNDED)

    def is_exact(self) -> bool:
        if len(self._intervals) != 1:
            return False
        (low, low_inc), (high, high_inc) = self._intervals[0]
        return low is not None and low == high and low_inc and high_inc

    def exact_version(self) -> Optional[Version]:
        return self._intervals[0][0][0] if self.is_exact() else None

    def contains(self, version: Version) -> bool:
        for (low, low_inc), (high, high_inc) in self._intervals:
            if low is not None and (version < low or (version == low and not low_inc)):
                continue
            if high is not None and (version > high or (version == high and not high_inc)):
                continue
            return True
        return False

    __contains__ = contains

    def intersect(self, other: "VersionRange") -> "VersionRange":
        result: List[Interval] = []
        for a_low, a_high in self._intervals:
            for b_low, b_high in other._intervals:
                low = a_low if _lower_gt(a_low, b_low) else b_low
                high = a_high if _upper_lt(a_high, b_high) else b_high
                if not _is_empty((low, high)):
                    result.append((low, high))
        return VersionRange(result)

    def union(self, other: "VersionRange") -> "VersionRange":
        return VersionRange(self._intervals + other._intervals)

    def complement(self) -> "VersionRange":
        if not self._intervals:
            return VersionRange.any()
        result: List[Interval] = []
        previous: Optional[Bound] = None
        for index, (low, high) in enumerate(self._intervals):
            if index == 0:
                if low[0] is not None:
                    result.append((_UNBOUNDED, (low[0], not low[1])))
            else:
                assert previous is not None and previous[0] is not None
                result.append(((previous[0], not previous[1]), (low[0], not low[1])))
            previous = high
        if previous is not None and previous[0] is not None:
            result.append(((previous[0], not previous[1]), _UNBOUNDED))
        return VersionRange(result)

    def difference(self, other: "VersionRange") -> "VersionRange":
        return self.intersect(other.complement())

    def allows_all(self, other: "VersionRange") -> bool:
        """True when ``other`` is a subset of this range."""
        return other.difference(self).is_empty()

    def allows_any(self, other: "VersionRange") -> bool:
        return not self.intersect(other).is_empty()

    def filter(self, versions: Iterable[Version]) -> List[Version]:
        return [v for v in versions if self.contains(v)]

    # Dunder

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionRange):
            return NotImplemented
        return self._intervals == other._intervals

    def __hash__(self) -> int:
        return hash(self._intervals)

    def __repr__(self) -> str:
        return f"VersionRange({str(self)!r})"

    def __str__(self) -> str:
        if self.is_empty():
            return "<empty>"
        if self.is_any():
            return "*"
        return " || ".join(_interval_str(i) for i in self._intervals)


def _interval_str(interval: Interval) -> str:
    (low, low_inc), (high, high_inc) = interval
    if low is not None and low == high:
        return f"=={low}"
    parts = []
    if low is not None:
        parts.append(f"{'>=' if low_inc else '>'}{low}")
    if high is not None:
        if not high_inc and high.dev == 0 and high.pre is None and high.post is None:
            # Upper bounds synthesized from "<V" render as "<V".
            parts.append(f"<{_release_version(high.epoch, high.release)}")
        else:
            parts.append(f"{'<=' if high_inc else '<'}{high}")
    return ",".join(parts)


def _next_release(epoch: int, release: Tuple[int, ...]) -> Version:
    bumped = release[:-1] + (release[-1] + 1,)
    return _release_version(epoch, bumped, ".dev0")


def _single_specifier(spec: Specifier) -> VersionRange:
    op, text = spec.operator, spec.version

    if op == "===":
        try:
            return VersionRange.exact(Version(text))
        except InvalidVersion:
            return VersionRange.empty()

    if text.endswith(".*"):
        base = Version(text[:-2])
        lower = _release_version(base.epoch, base.release, ".dev0")
        upper = _next_release(base.epoch, base.release)
        prefix = VersionRange([((lower, True), (upper, False))])
        return prefix if op == "==" else prefix.complement()

    version = Version(text)
    if op == "==":
        return VersionRange.exact(version)
    if op == "!=":
        return VersionRange.exact(version).complement()
    if op == ">=":
        return VersionRange.at_least(version)
    if op == ">":
        return VersionRange.at_least(version, inclusive=False)
    if op == "<=":
        return VersionRange.below(version, inclusive=True)
    if op == "<":
        if version.pre is None and version.dev is None and version.post is None:
            return VersionRange.below(_release_version(version.epoch, version.release, ".dev0"))
        return VersionRange.below(version)
    if op == "~=":
        prefix = version.release[:-1]
        upper = _next_release(version.epoch, prefix)
        return VersionRange([((version, True), (upper, False))])
    raise ValueError(f"Unsupported specifier operator {op!r}")
