"""Requirement model: requirements, sources, environments and version ranges."""
from .models import (
    DirectUrlSource,
    Environment,
    PathSource,
    RegistrySource,
    Requirement,
    SourceKind,
    SourceSpec,
    VcsSource,
)
from .parser import normalize_name, parse, parse_requirements_file, parse_specifier
from .ranges import VersionRange

__all__ = [
    "DirectUrlSource",
    "Environment",
    "PathSource",
    "RegistrySource",
    "Requirement",
    "SourceKind",
    "SourceSpec",
    "VcsSource",
    "VersionRange",
    "normalize_name",
    "parse",
    "parse_requirements_file",
    "parse_specifier",
]
