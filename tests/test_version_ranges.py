"""Tests for the version set algebra used by the resolver."""
from packaging.version import Version

from depforge.versioning import VersionRange


def v(text):
    return Version(text)


class TestFromSpecifier:
    """Specifier conversion."""

    def test_empty_specifier_is_any(self):
        assert VersionRange.from_specifier("").is_any()

    def test_bounded_range(self):
        r = VersionRange.from_specifier(">=1.0,<2.0")
        assert v("1.0") in r
        assert v("1.9") in r
        assert v("2.0") not in r
        assert str(r) == ">=1.0,<2.0"

    def test_exact(self):
        r = VersionRange.from_specifier("==1.5")
        assert r.is_exact()
        assert r.exact_version() == v("1.5")

    def test_compatible_release(self):
        r = VersionRange.from_specifier("~=1.4.2")
        assert v("1.4.9") in r
        assert v("1.5") not in r
        assert v("1.4.1") not in r

    def test_not_equal_splits_range(self):
        r = VersionRange.from_specifier("!=1.5")
        assert v("1.4") in r
        assert v("1.5") not in r
        assert v("1.6") in r
        assert len(r.intervals) == 2

    def test_wildcard(self):
        r = VersionRange.from_specifier("==1.*")
        assert v("1.0") in r
        assert v("1.99") in r
        assert v("2.0") not in r

    def test_contradiction_is_empty(self):
        assert VersionRange.from_specifier(">2,<1").is_empty()


class TestAlgebra:
    """Intersection, union, complement and subset checks."""

    def test_complement_of_complement(self):
        r = VersionRange.from_specifier(">=1.0,<2.0")
        assert r.complement().complement() == r

    def test_complement_of_any_is_empty(self):
        assert VersionRange.any().complement().is_empty()
        assert VersionRange.empty().complement().is_any()

    def test_union_merges_adjacent(self):
        low = VersionRange.below(v("1.0"))
        high = VersionRange.at_least(v("1.0"))
        assert low.union(high).is_any()

    def test_intersect_disjoint(self):
        a = VersionRange.from_specifier("<2.0")
        b = VersionRange.from_specifier(">=2.0")
        assert a.intersect(b).is_empty()
        assert not a.allows_any(b)

    def test_allows_all(self):
        outer = VersionRange.from_specifier(">=1.0")
        inner = VersionRange.from_specifier(">=1.5,<1.8")
        assert outer.allows_all(inner)
        assert not inner.allows_all(outer)

    def test_difference_removes_version(self):
        r = VersionRange.from_specifier(">=1.0,<2.0").difference(VersionRange.exact("1.5"))
        assert v("1.5") not in r
        assert v("1.4") in r
        assert v("1.6") in r

    def test_filter_keeps_order(self):
        versions = [v("2.0"), v("1.9"), v("1.5"), v("1.0")]
        assert VersionRange.from_specifier("<2").filter(versions) == versions[1:]

    def test_equal_ranges_hash_equal(self):
        a = VersionRange.from_specifier(">=1,<2")
        b = VersionRange.from_specifier("<2, >=1")
        assert a == b
        assert hash(a) == hash(b)
