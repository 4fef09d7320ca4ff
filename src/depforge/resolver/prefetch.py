"""Speculative metadata prefetching for packages the solver keeps backtracking on."""
from __future__ import annotations

import logging
from typing import Dict, List

from packaging.version import Version

from ..constants import Constants
from ..registry.models import Candidate
from ..registry.provider import CandidateSequence
from ..versioning.ranges import VersionRange
from .selector import CandidateSelector
from .terms import PackageRef

logger = logging.getLogger(__name__)


class BatchPrefetcher:
    """Requests metadata for the next versions a failing search will probably try.

    Once a package has had 5, 10 and 20 versions tried (and every 20 after
    that) the next ``min(tried, PREFETCH_LIMIT)`` versions are requested: first
    those still compatible with the current range, newest first, then
    anything older than the last one picked.
    """

    def __init__(self, provider, selector: CandidateSelector, limit: int = Constants.PREFETCH_LIMIT):
        self.provider = provider
        self.selector = selector
        self.limit = limit
        self.tried: Dict[PackageRef, int] = {}
        self.last_prefetch: Dict[PackageRef, int] = {}
        self.requested: List[Candidate] = []

    def version_tried(self, package: PackageRef) -> None:
        self.tried[package] = self.tried.get(package, 0) + 1

    def should_prefetch(self, package: PackageRef):
        tried = self.tried.get(package, 0)
        previous = self.last_prefetch.get(package, 0)
        due = (
            (tried >= 5 and previous < 5)
            or (tried >= 10 and previous < 10)
            or (tried >= 20 and previous < 20)
            or (tried >= 20 and tried - previous >= 20)
        )
        return tried, due

    def prefetch(self, package: PackageRef, sequence: CandidateSequence, constraint: VersionRange,
                 version: Version) -> int:
        """Queue a batch if one is due; returns the number of candidates requested."""
        tried, due = self.should_prefetch(package)
        if not due or not sequence.loaded:
            return 0
        total = min(tried, self.limit)
        batch: List[Candidate] = []
        compatible = constraint.difference(VersionRange.exact(version))
        for candidate in self.selector.candidates(sequence, compatible):
            if len(batch) >= total:
                break
            batch.append(candidate)
        previous = batch[-1].version if batch else version
        if len(batch) < total:
            older = VersionRange.below(previous).difference(compatible)
            for candidate in self.selector.candidates(sequence, older):
                if len(batch) >= total:
                    break
                batch.append(candidate)
        for candidate in batch:
            self.provider.prefetch(candidate)
        self.requested.extend(batch)
        self.last_prefetch[package] = tried
        logger.debug("Prefetching %d %s versions", len(batch), package)
        return len(batch)
