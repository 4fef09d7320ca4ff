"""Incompatibilities: sets of terms that must not all hold at once."""
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional

from .terms import PackageRef, Term


class Cause:
    """Why an incompatibility exists."""

    name = "derived"


class RootCause(Cause):
    name = "root"


class DependencyCause(Cause):
    name = "dependency"


class ConstraintCause(Cause):
    name = "constraint"


class NoVersionsCause(Cause):
    name = "no_versions"


class UnavailableCause(Cause):
    """A specific version exists but cannot be used."""

    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason


class ConflictCause(Cause):
    """Derived during conflict resolution from two earlier incompatibilities."""

    name = "conflict"

    def __init__(self, conflict: "Incompatibility", other: "Incompatibility"):
        self.conflict = conflict
        self.other = other


ROOT_CAUSE = RootCause()
DEPENDENCY = DependencyCause()
CONSTRAINT = ConstraintCause()
NO_VERSIONS = NoVersionsCause()


def _merge(terms: Iterable[Term]) -> List[Term]:
    by_package: Dict[PackageRef, Term] = {}
    for term in terms:
        previous = by_package.get(term.package)
        if previous is None:
            by_package[term.package] = term
            continue
        merged = previous.intersect(term)
        # Two terms for a package that cannot both hold make the clause vacuous;
        # keep the positive one so the incompatibility stays well formed.
        by_package[term.package] = merged if merged is not None else (previous if previous.positive else term)
    return list(by_package.values())


class Incompatibility:
    """A clause: not all of ``terms`` may be satisfied simultaneously."""

    def __init__(self, terms: Iterable[Term], cause: Cause):
        terms = list(terms)
        if isinstance(cause, ConflictCause) and len(terms) != 1:
            # The root is always selected, so "root and X" is just "X".
            terms = [t for t in terms if not (t.positive and t.package.is_root)] or terms
        if len(terms) > 2 or (len(terms) == 2 and terms[0].package == terms[1].package):
            terms = _merge(terms)
        self.terms: List[Term] = terms
        self.cause = cause

    @property
    def is_failure(self) -> bool:
        """True for the terminal incompatibility: the root itself cannot be selected."""
        return not self.terms or (len(self.terms) == 1 and self.terms[0].positive and self.terms[0].package.is_root)

    @property
    def is_derived(self) -> bool:
        return isinstance(self.cause, ConflictCause)

    @property
    def external_incompatibilities(self) -> Iterator["Incompatibility"]:
        """The non-derived incompatibilities this one was derived from, depth first."""
        if isinstance(self.cause, ConflictCause):
            yield from self.cause.conflict.external_incompatibilities
            yield from self.cause.other.external_incompatibilities
        else:
            yield self

    def packages(self) -> List[str]:
        """Names of the real packages mentioned anywhere in the derivation."""
        names: List[str] = []
        for incompatibility in self.external_incompatibilities:
            for term in incompatibility.terms:
                if not term.package.is_root and term.package.name not in names:
                    names.append(term.package.name)
        return names

    def _single(self, positive: bool) -> Optional[Term]:
        found = [t for t in self.terms if t.positive == positive]
        return found[0] if len(found) == 1 else None

    def _verb(self) -> str:
        return "depends on" if self.cause is DEPENDENCY else "requires"

    def __str__(self) -> str:
        cause = self.cause
        if cause is DEPENDENCY and len(self.terms) == 2:
            depender, dependee = self.terms
            return f"{_terse(depender, allow_every=True)} depends on {_terse(dependee)}"
        if cause is CONSTRAINT and len(self.terms) == 2:
            constrained = self.terms[1]
            return f"{constrained.package} is constrained to {constrained.constraint.complement()}"
        if cause is NO_VERSIONS:
            term = self.terms[0]
            if term.constraint.is_any():
                return f"there are no versions of {term.package}"
            return f"no versions of {term.package} match {term.constraint}"
        if isinstance(cause, UnavailableCause):
            return f"{_terse(self.terms[0], allow_every=True)} is unavailable: {cause.reason}"
        if cause is ROOT_CAUSE:
            return "root is required"
        if self.is_failure:
            return "version solving failed"

        if len(self.terms) == 1:
            term = self.terms[0]
            what = str(term.package) if term.constraint.is_any() else _terse(term)
            return f"{what} is {'forbidden' if term.positive else 'required'}"

        if len(self.terms) == 2:
            first, second = self.terms
            if first.positive == second.positive:
                if first.positive:
                    return f"{_terse(first, allow_every=True)} is incompatible with {_terse(second, allow_every=True)}"
                return f"either {_terse(first)} or {_terse(second)}"

        positive = [_terse(t) for t in self.terms if t.positive]
        negative = [_terse(t) for t in self.terms if not t.positive]
        if positive and negative:
            if len(positive) == 1:
                single = self._single(True)
                return f"{_terse(single, allow_every=True)} requires {' or '.join(negative)}"
            return f"if {' and '.join(positive)} then {' or '.join(negative)}"
        if positive:
            return f"one of {' or '.join(positive)} must be false"
        return f"one of {' or '.join(negative)} must be true"

    def and_to_string(self, other: "Incompatibility", this_line: Optional[int] = None,
                      other_line: Optional[int] = None) -> str:
        """Describe this incompatibility and ``other`` together in one clause."""
        for combined in (
            self._requires_both(other, this_line, other_line),
            self._requires_through(other, this_line, other_line),
            self._requires_forbidden(other, this_line, other_line),
        ):
            if combined is not None:
                return combined
        text = str(self)
        if this_line is not None:
            text += f" ({this_line})"
        text += f" and {other}"
        if other_line is not None:
            text += f" ({other_line})"
        return text

    def _requires_both(self, other, this_line, other_line) -> Optional[str]:
        if len(self.terms) == 1 or len(other.terms) == 1:
            return None
        this_positive = self._single(True)
        other_positive = other._single(True)
        if this_positive is None or other_positive is None or this_positive.package != other_positive.package:
            return None
        this_negatives = " or ".join(_terse(t) for t in self.terms if not t.positive)
        other_negatives = " or ".join(_terse(t) for t in other.terms if not t.positive)
        verb = "depends on" if self.cause is DEPENDENCY and other.cause is DEPENDENCY else "requires"
        text = f"{_terse(this_positive, allow_every=True)} {verb} both {this_negatives}"
        if this_line is not None:
            text += f" ({this_line})"
        text += f" and {other_negatives}"
        if other_line is not None:
            text += f" ({other_line})"
        return text

    def _requires_through(self, other, this_line, other_line) -> Optional[str]:
        if len(self.terms) == 1 or len(other.terms) == 1:
            return None
        this_negative, other_negative = self._single(False), other._single(False)
        this_positive, other_positive = self._single(True), other._single(True)
        if (this_negative is not None and other_positive is not None
                and this_negative.package == other_positive.package
                and this_negative.inverse.satisfies(other_positive)):
            prior, prior_negative, prior_line, latter, latter_line = self, this_negative, this_line, other, other_line
        elif (other_negative is not None and this_positive is not None
                and other_negative.package == this_positive.package
                and other_negative.inverse.satisfies(this_positive)):
            prior, prior_negative, prior_line, latter, latter_line = other, other_negative, other_line, self, this_line
        else:
            return None

        prior_positives = [t for t in prior.terms if t.positive]
        if len(prior_positives) > 1:
            text = "if " + " or ".join(_terse(t) for t in prior_positives) + " then "
        else:
            text = f"{_terse(prior_positives[0], allow_every=True)} {prior._verb()} "
        text += _terse(prior_negative)
        if prior_line is not None:
            text += f" ({prior_line})"
        text += " which "
        latter_negatives = [_terse(t) for t in latter.terms if not t.positive]
        if latter_negatives:
            text += f"{latter._verb()} " + " or ".join(latter_negatives)
        elif isinstance(latter.cause, UnavailableCause):
            text += f"is unavailable: {latter.cause.reason}"
        else:
            text += "is forbidden"
        if latter_line is not None:
            text += f" ({latter_line})"
        return text

    def _requires_forbidden(self, other, this_line, other_line) -> Optional[str]:
        if len(self.terms) != 1 and len(other.terms) != 1:
            return None
        if len(self.terms) == 1:
            prior, prior_line, latter, latter_line = other, other_line, self, this_line
        else:
            prior, prior_line, latter, latter_line = self, this_line, other, other_line
        negative = prior._single(False)
        if negative is None or not negative.inverse.satisfies(latter.terms[0]):
            return None
        positives = [t for t in prior.terms if t.positive]
        if len(positives) > 1:
            text = "if " + " or ".join(_terse(t) for t in positives) + " then "
        elif positives:
            text = f"{_terse(positives[0], allow_every=True)} {prior._verb()} "
        else:
            return None
        text += _terse(latter.terms[0])
        if prior_line is not None:
            text += f" ({prior_line})"
        text += " which "
        if latter.cause is NO_VERSIONS:
            text += "doesn't match any versions"
        elif isinstance(latter.cause, UnavailableCause):
            text += f"is unavailable: {latter.cause.reason}"
        else:
            text += "is forbidden"
        if latter_line is not None:
            text += f" ({latter_line})"
        return text

    def __repr__(self) -> str:
        return f"<Incompatibility {self.cause.name}: {', '.join(map(str, self.terms))}>"


def _terse(term: Term, allow_every: bool = False) -> str:
    if term.package.is_root:
        return "root"
    if term.constraint.is_any():
        return f"every version of {term.package}" if allow_every else str(term.package)
    constraint = str(term.constraint)
    separator = "" if constraint[:1] in "<>=!~" else " "
    return f"{term.package}{separator}{constraint}"
