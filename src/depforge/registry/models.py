"""Candidates, artifact links and package metadata."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple, Union
from urllib.parse import urldefrag

from packaging.metadata import parse_email
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.tags import Tag
from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)
from packaging.version import InvalidVersion, Version

from ..errors import MetadataUnavailable, ParseError
from ..versioning.models import Environment, RegistrySource, Requirement, SourceSpec
from ..versioning.parser import parse

SDIST_SUFFIXES = (".tar.gz", ".zip", ".tar.bz2", ".tgz", ".tar")


@dataclass(frozen=True)
class ArtifactLink:
    """One downloadable file from an index listing or a direct reference."""

    filename: str
    url: str
    hashes: Tuple[Tuple[str, str], ...] = ()
    requires_python: Optional[str] = None
    yanked: Optional[str] = None
    # PEP 658: False when absent, True or the metadata file's hashes otherwise
    core_metadata: Union[bool, Tuple[Tuple[str, str], ...]] = False

    @property
    def is_wheel(self) -> bool:
        return self.filename.endswith(".whl")

    @property
    def is_sdist(self) -> bool:
        return self.filename.endswith(SDIST_SUFFIXES)

    @property
    def is_yanked(self) -> bool:
        return self.yanked is not None

    @property
    def sha256(self) -> Optional[str]:
        return dict(self.hashes).get("sha256")

    @property
    def metadata_url(self) -> Optional[str]:
        if not self.core_metadata:
            return None
        return urldefrag(self.url)[0] + ".metadata"

    @property
    def metadata_sha256(self) -> Optional[str]:
        if isinstance(self.core_metadata, tuple):
            return dict(self.core_metadata).get("sha256")
        return None

    def wheel_tags(self) -> FrozenSet[Tag]:
        if not self.is_wheel:
            return frozenset()
        return parse_wheel_filename(self.filename)[3]

    def project_version(self) -> Optional[Tuple[str, Version]]:
        """(normalized name, version) from the filename, or None if unparseable."""
        try:
            if self.is_wheel:
                name, version, _, _ = parse_wheel_filename(self.filename)
                return name, version
            if self.filename.endswith((".tar.gz", ".zip")):
                return parse_sdist_filename(self.filename)
            if self.is_sdist:
                stem = self.filename.rsplit(".tar", 1)[0] if ".tar" in self.filename else self.filename[:-4]
                name, _, version = stem.rpartition("-")
                return canonicalize_name(name), Version(version)
        except (InvalidWheelFilename, InvalidSdistFilename, InvalidVersion):
            return None
        return None

    def allows_python(self, python_version: Version) -> bool:
        if not self.requires_python:
            return True
        try:
            return SpecifierSet(self.requires_python).contains(python_version, prereleases=True)
        except InvalidSpecifier:
            return True


@dataclass(frozen=True)
class Candidate:
    """A specific version of a package from one source, not yet fetched.

    ``location`` is a local directory or file for path and VCS sources
    (the checkout), unused for registry and URL sources.
    """

    name: str
    version: Version
    source: SourceSpec = field(default_factory=RegistrySource)
    artifacts: Tuple[ArtifactLink, ...] = ()
    location: Optional[str] = None

    @property
    def is_yanked(self) -> bool:
        return bool(self.artifacts) and all(a.is_yanked for a in self.artifacts)

    @property
    def yanked_reason(self) -> Optional[str]:
        reasons = [a.yanked for a in self.artifacts if a.yanked]
        return reasons[0] if reasons else None

    def allows_python(self, python_version: Version) -> bool:
        """True when at least one artifact accepts the interpreter version."""
        if not self.artifacts:
            return True
        return any(a.allows_python(python_version) for a in self.artifacts)

    def requires_python(self) -> Optional[str]:
        for artifact in self.artifacts:
            if artifact.requires_python:
                return artifact.requires_python
        return None

    def best_wheel(self, environment: Environment) -> Optional[ArtifactLink]:
        """The compatible wheel with the most preferred tag, or None."""
        best: Optional[Tuple[int, int, ArtifactLink]] = None
        python = environment.python_version
        for index, artifact in enumerate(self.artifacts):
            if not artifact.is_wheel or not artifact.allows_python(python):
                continue
            try:
                priority = environment.supports_any(artifact.wheel_tags())
            except InvalidWheelFilename:
                continue
            if priority is None:
                continue
            if best is None or (priority, index) < best[:2]:
                best = (priority, index, artifact)
        return best[2] if best else None

    def sdist(self) -> Optional[ArtifactLink]:
        for artifact in self.artifacts:
            if artifact.is_sdist:
                return artifact
        return None

    def __str__(self) -> str:
        return f"{self.name}=={self.version}"


@dataclass(frozen=True)
class Metadata:
    """Core metadata relevant to resolution."""

    name: str
    version: Version
    requires_dist: Tuple[Requirement, ...] = ()
    provides_extra: FrozenSet[str] = frozenset()
    requires_python: SpecifierSet = field(default_factory=SpecifierSet)
    tags: Tuple[Tag, ...] = ()

    def dependencies(self, environment: Environment, extras: Iterable[str] = ()) -> List[Requirement]:
        """Requirements that apply in ``environment`` with ``extras`` active."""
        return [req for req in self.requires_dist if req.applies_to(environment, extras)]

    def extra_dependencies(self, extra: str, environment: Environment) -> List[Requirement]:
        """Requirements added by ``extra`` on top of the base dependencies."""
        base = set(self.dependencies(environment))
        return [req for req in self.dependencies(environment, [extra]) if req not in base]

    def to_core_metadata(self) -> str:
        """Render as a ``METADATA`` document (metadata version 2.1)."""
        lines = [
            "Metadata-Version: 2.1",
            f"Name: {self.name}",
            f"Version: {self.version}",
        ]
        if self.requires_python:
            lines.append(f"Requires-Python: {self.requires_python}")
        for extra in sorted(self.provides_extra):
            lines.append(f"Provides-Extra: {extra}")
        for req in self.requires_dist:
            lines.append(f"Requires-Dist: {req}")
        return "\n".join(lines) + "\n"


def parse_core_metadata(data: Union[bytes, str], tags: Iterable[Tag] = ()) -> Metadata:
    """Parse a ``METADATA`` / ``PKG-INFO`` document.

    Raises:
        MetadataUnavailable: when required fields are missing or malformed.
    """
    raw, _ = parse_email(data)
    name = raw.get("name")
    if not name or not raw.get("version"):
        raise MetadataUnavailable(name or "<unknown>", "core metadata lacks Name or Version")
    try:
        version = Version(raw["version"])
    except InvalidVersion as exc:
        raise MetadataUnavailable(name, f"invalid version {raw['version']!r}") from exc
    requires = []
    for line in raw.get("requires_dist", []):
        try:
            requires.append(parse(line))
        except ParseError as exc:
            raise MetadataUnavailable(name, f"invalid Requires-Dist {line!r}: {exc.reason}") from exc
    try:
        requires_python = SpecifierSet(raw.get("requires_python") or "")
    except InvalidSpecifier as exc:
        raise MetadataUnavailable(name, f"invalid Requires-Python: {exc}") from exc
    return Metadata(
        name=canonicalize_name(name),
        version=version,
        requires_dist=tuple(requires),
        provides_extra=frozenset(canonicalize_name(e) for e in raw.get("provides_extra", [])),
        requires_python=requires_python,
        tags=tuple(tags),
    )

