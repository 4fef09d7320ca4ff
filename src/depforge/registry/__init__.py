"""Distribution provider over registry, direct URL, VCS and local path sources."""
from .models import ArtifactLink, Candidate, Metadata, parse_core_metadata
from .provider import CandidateSequence, DistributionProvider

__all__ = [
    "ArtifactLink",
    "Candidate",
    "CandidateSequence",
    "DistributionProvider",
    "Metadata",
    "parse_core_metadata",
]
