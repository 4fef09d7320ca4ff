"""Data models for requirements, sources and target environments."""
from __future__ import annotations

import hashlib
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from packaging.markers import Marker, default_environment
from packaging.specifiers import SpecifierSet
from packaging.tags import Tag, parse_tag, sys_tags
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version


class SourceKind(Enum):
    """Closed set of places a distribution can come from."""
    REGISTRY = "registry"
    DIRECT_URL = "direct-url"
    VCS = "vcs"
    PATH = "path"


@dataclass(frozen=True)
class RegistrySource:
    """A package index; ``None`` means the configured index list."""
    index_url: Optional[str] = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.REGISTRY

    def to_url(self) -> str:
        return self.index_url or ""


@dataclass(frozen=True)
class DirectUrlSource:
    """A wheel or source archive at an HTTP(S) URL."""
    url: str
    hashes: Tuple[Tuple[str, str], ...] = ()

    @property
    def kind(self) -> SourceKind:
        return SourceKind.DIRECT_URL

    def to_url(self) -> str:
        if self.hashes:
            name, value = self.hashes[0]
            return f"{self.url}#{name}={value}"
        return self.url


@dataclass(frozen=True)
class VcsSource:
    """A version-control reference, e.g. ``git+https://host/repo.git@v1.0``."""
    vcs: str
    url: str
    rev: Optional[str] = None
    subdirectory: Optional[str] = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.VCS

    def to_url(self) -> str:
        url = f"{self.vcs}+{self.url}"
        if self.rev:
            url = f"{url}@{self.rev}"
        if self.subdirectory:
            url = f"{url}#subdirectory={self.subdirectory}"
        return url


@dataclass(frozen=True)
class PathSource:
    """A local source tree, wheel file or source archive."""
    path: str
    editable: bool = False

    @property
    def kind(self) -> SourceKind:
        return SourceKind.PATH

    def to_url(self) -> str:
        return "file://" + self.path if self.path.startswith("/") else self.path


SourceSpec = Union[RegistrySource, DirectUrlSource, VcsSource, PathSource]


@dataclass(frozen=True)
class Requirement:
    """A named constraint on an acceptable package version, extras and source.

    ``name`` is always stored PEP 503 normalized, so equality between
    requirements is case and separator insensitive. An empty name is only
    allowed for unnamed path/URL requirements whose name is discovered from
    metadata later (see ``with_name``).
    """
    name: str
    specifier: SpecifierSet = field(default_factory=SpecifierSet)
    extras: FrozenSet[str] = frozenset()
    marker: Optional[Marker] = None
    source: Optional[SourceSpec] = None

    def __post_init__(self) -> None:
        if self.name:
            object.__setattr__(self, "name", canonicalize_name(self.name))
        object.__setattr__(self, "extras", frozenset(canonicalize_name(e) for e in self.extras))

    def with_name(self, name: str) -> "Requirement":
        return Requirement(name, self.specifier, self.extras, self.marker, self.source)

    def with_specifier(self, specifier: SpecifierSet) -> "Requirement":
        return Requirement(self.name, specifier, self.extras, self.marker, self.source)

    def applies_to(self, environment: Optional["Environment"] = None, extras: Iterable[str] = ()) -> bool:
        """Evaluate the marker for the environment with any of the given extras active."""
        if self.marker is None:
            return True
        env = environment or Environment.current()
        return env.evaluate(self.marker, extras)

    def matches(
        self,
        version: Union[str, Version],
        extras: Iterable[str] = (),
        environment: Optional["Environment"] = None,
    ) -> bool:
        """True when the requirement applies in ``environment`` and accepts ``version``.

        ``extras`` are the extras active for marker evaluation. Pre-releases
        are accepted when they fall inside the specifier; selection policy for
        pre-releases belongs to the resolver.
        """
        if isinstance(version, str):
            try:
                version = Version(version)
            except InvalidVersion:
                return False
        if not self.applies_to(environment, extras):
            return False
        return self.specifier.contains(version, prereleases=True)

    def __str__(self) -> str:
        text = self.name
        if self.extras:
            text += "[" + ",".join(sorted(self.extras)) + "]"
        if self.source is not None and not isinstance(self.source, RegistrySource):
            text = f"{text} @ {self.source.to_url()}" if text else self.source.to_url()
            if self.marker is not None:
                text += " "
        elif self.specifier:
            text += ",".join(sorted(str(s) for s in self.specifier))
        if self.marker is not None:
            text += f"; {self.marker}"
        return text


@dataclass
class Environment:
    """Snapshot of a target interpreter: PEP 508 marker values and wheel tags.

    Tags are ordered most preferred first; a tag's index is its priority.
    """
    markers: Dict[str, str]
    tags: Tuple[Tag, ...] = ()

    def __post_init__(self) -> None:
        self._tag_priority = {tag: index for index, tag in enumerate(self.tags)}

    @classmethod
    def current(cls) -> "Environment":
        return _current_environment()

    @classmethod
    def from_dict(cls, markers: Mapping[str, str], tags: Iterable[Union[str, Tag]] = ()) -> "Environment":
        """Build a snapshot; unspecified marker keys default to the running interpreter."""
        values = dict(default_environment())
        values.update(markers)
        parsed = []
        for tag in tags:
            if isinstance(tag, Tag):
                parsed.append(tag)
            else:
                parsed.extend(parse_tag(tag))
        return cls(markers=values, tags=tuple(parsed))

    @property
    def python_version(self) -> Version:
        return Version(self.markers.get("python_full_version") or self.markers["python_version"])

    def evaluate(self, marker: Marker, extras: Iterable[str] = ()) -> bool:
        extras = list(extras)
        values = dict(self.markers)
        if not extras:
            values["extra"] = ""
            return marker.evaluate(values)
        for extra in extras:
            values["extra"] = canonicalize_name(extra)
            if marker.evaluate(values):
                return True
        return False

    def tag_priority(self, tag: Tag) -> Optional[int]:
        """Lower is better; None when the tag is not supported."""
        return self._tag_priority.get(tag)

    def supports_any(self, tags: Iterable[Tag]) -> Optional[int]:
        """Best priority among ``tags``, or None when none is supported."""
        best = None
        for tag in tags:
            priority = self._tag_priority.get(tag)
            if priority is not None and (best is None or priority < best):
                best = priority
        return best

    def fingerprint(self) -> str:
        """Stable digest of the marker values and the preferred tags."""
        payload = json.dumps(
            {"markers": sorted(self.markers.items()), "tags": [str(t) for t in self.tags[:8]]},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def interpreter_tag(self) -> str:
        impl = self.markers.get("implementation_name", "cpython")
        prefix = {"cpython": "cp", "pypy": "pp"}.get(impl, impl[:2])
        major, minor = self.markers.get("python_version", "3.0").split(".")[:2]
        return f"{prefix}{major}{minor}"


_CURRENT: Optional[Environment] = None


def _current_environment() -> Environment:
    global _CURRENT  # pylint: disable=global-statement
    if _CURRENT is None:
        _CURRENT = Environment(markers=dict(default_environment()), tags=tuple(sys_tags()))
    return _CURRENT


def running_python() -> str:
    """Path of the interpreter running depforge."""
    return sys.executable
