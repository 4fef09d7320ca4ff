"""PubGrub resolver: from root requirements to a ``ResolutionGraph``."""
from .graph import Edge, Node, ResolutionGraph, preferences_from_lock, read_preferences
from .incompatibility import Incompatibility
from .report import explain
from .selector import CandidateSelector
from .solver import Resolver, VersionSolver
from .terms import PackageRef, Term

__all__ = [
    "CandidateSelector",
    "Edge",
    "Incompatibility",
    "Node",
    "PackageRef",
    "ResolutionGraph",
    "Resolver",
    "Term",
    "VersionSolver",
    "explain",
    "preferences_from_lock",
    "read_preferences",
]
