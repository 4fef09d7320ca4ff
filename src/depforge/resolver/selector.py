"""Version selection policy: preferences, pre-releases and yanked releases."""
from __future__ import annotations

import logging
from typing import Iterable, Iterator, Mapping, Optional, Union

from packaging.utils import canonicalize_name
from packaging.version import Version

from ..constants import PrereleaseMode, UpgradePolicy
from ..registry.models import Candidate
from ..registry.provider import CandidateSequence
from ..versioning.ranges import VersionRange

logger = logging.getLogger(__name__)


class CandidateSelector:
    """Picks the version to try next for a package within a range.

    Order of preference: a locked/pinned version from ``preferences`` (unless
    the package is being upgraded), then the newest eligible version. A
    version is eligible when it is not yanked (yanked releases are only
    taken when the range is a single exact version) and is not a
    pre-release, unless pre-releases are allowed for the package.
    """

    def __init__(
        self,
        *,
        prereleases: PrereleaseMode = PrereleaseMode.IF_NECESSARY,
        preferences: Optional[Mapping[str, Union[str, Version]]] = None,
        upgrade: UpgradePolicy = UpgradePolicy.NONE,
        upgrade_packages: Iterable[str] = (),
    ):
        self.prereleases = prereleases
        self.preferences = {
            canonicalize_name(name): Version(str(version)) for name, version in (preferences or {}).items()
        }
        self.upgrade = upgrade
        self.upgrade_packages = frozenset(canonicalize_name(n) for n in upgrade_packages)

    def preferred(self, name: str) -> Optional[Version]:
        if self.upgrade is UpgradePolicy.ALL:
            return None
        if self.upgrade is UpgradePolicy.PACKAGES and name in self.upgrade_packages:
            return None
        return self.preferences.get(name)

    def _eligible(self, sequence: CandidateSequence, constraint: VersionRange, allow_pre: bool) -> Iterator[Candidate]:
        exact = constraint.exact_version()
        for version in sequence.versions:
            if version not in constraint:
                continue
            if version.is_prerelease and not allow_pre:
                continue
            candidate = sequence.get(version)
            if candidate.is_yanked and version != exact:
                continue
            yield candidate

    def _allows_prerelease(self, explicit: bool) -> bool:
        if self.prereleases is PrereleaseMode.ALLOW:
            return True
        if self.prereleases is PrereleaseMode.DISALLOW:
            return False
        return explicit

    def candidates(self, sequence: CandidateSequence, constraint: VersionRange, explicit_prerelease: bool = False):
        """Eligible candidates in ``constraint``, best first (preference aside)."""
        allow_pre = self._allows_prerelease(explicit_prerelease)
        found = False
        for candidate in self._eligible(sequence, constraint, allow_pre):
            found = True
            yield candidate
        if not found and not allow_pre and self.prereleases is PrereleaseMode.IF_NECESSARY:
            yield from self._eligible(sequence, constraint, True)

    def select(
        self,
        sequence: CandidateSequence,
        constraint: VersionRange,
        explicit_prerelease: bool = False,
    ) -> Optional[Candidate]:
        preferred = self.preferred(sequence.name)
        if preferred is not None and preferred in constraint:
            candidate = sequence.get(preferred)
            if candidate is not None and (not candidate.is_yanked or constraint.exact_version() == preferred):
                logger.debug("Using preferred version %s of %s", preferred, sequence.name)
                return candidate
        return next(iter(self.candidates(sequence, constraint, explicit_prerelease)), None)

    def count(self, sequence: CandidateSequence, constraint: VersionRange, explicit_prerelease: bool = False) -> int:
        return sum(1 for _ in self.candidates(sequence, constraint, explicit_prerelease))
