"""Fetch strategies for the four source kinds.

Every handler offers the same three operations: list the candidates a
source offers for a package, read a candidate's metadata, and produce a
wheel for installation. The set of handlers is closed; ``HANDLERS`` maps
each ``SourceKind`` to its implementation.
"""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

from packaging.version import Version

from ..cache import Cache
from ..cache.keys import metadata_key, sdist_key, wheel_key, file_sha256
from ..common.logging_utils import extra_context, safe_url
from ..errors import MetadataUnavailable, NetworkError, NotFound
from ..versioning.models import (
    DirectUrlSource,
    Environment,
    PathSource,
    RegistrySource,
    SourceKind,
    SourceSpec,
    VcsSource,
)
from .metadata import read_wheel_metadata, read_wheel_metadata_bytes, static_metadata
from .models import ArtifactLink, Candidate, Metadata, parse_core_metadata
from .simple import SimpleIndex, group_by_version
from .vcs import GitSource

logger = logging.getLogger(__name__)

METADATA_FILE = "METADATA"

CandidateFactories = Dict[Version, Callable[[], Candidate]]


@dataclass
class SourceContext:
    """Collaborators shared by every handler."""

    cache: Cache
    client: object
    environment: Environment
    simple: SimpleIndex
    git: GitSource
    builder: Optional[object] = None

    def require_builder(self, package: str):
        if self.builder is None:
            raise MetadataUnavailable(package, "only a source distribution is available and building is disabled")
        return self.builder


def _check_identity(candidate_name: str, metadata: Metadata, expected_version: Optional[Version] = None) -> Metadata:
    if candidate_name and metadata.name != candidate_name:
        raise MetadataUnavailable(candidate_name, f"source provides {metadata.name} instead")
    if expected_version is not None and metadata.version != expected_version:
        raise MetadataUnavailable(
            candidate_name, f"metadata reports version {metadata.version}, expected {expected_version}"
        )
    return metadata


def _url_filename(url: str) -> str:
    return unquote(urlsplit(url).path.rsplit("/", 1)[-1])


async def download_artifact(context: SourceContext, name: str, version: str, link: ArtifactLink) -> Path:
    """Download ``link`` into the cache (wheels or archives bucket), verifying its hash."""
    key_factory = wheel_key if link.is_wheel else sdist_key
    key = key_factory(name, version, link.url.split("#", 1)[0], link.sha256 or "")

    async def producer(directory: Path):
        target = directory / link.filename
        actual = await context.client.download(link.url, target)
        expected = link.sha256
        if expected and actual != expected:
            raise NetworkError(
                safe_url(link.url), f"sha256 mismatch: expected {expected}, got {actual}"
            )
        return {"origin_url": safe_url(link.url), "sha256": actual}

    entry = await context.cache.put(key, producer)
    return entry.file(link.filename)


class RegistryHandler:
    """Package indexes speaking the simple repository API."""

    kind = SourceKind.REGISTRY

    def __init__(self, context: SourceContext):
        self.context = context

    async def list(self, name: str, source: RegistrySource) -> CandidateFactories:
        simple = self.context.simple
        if source.index_url:
            simple = SimpleIndex(simple.client, simple.cache, [source.index_url])
        index_url, links = await simple.project_links(name)
        grouped = group_by_version(name, links)
        origin = RegistrySource(index_url)
        return {
            version: partial(Candidate, name, version, origin, tuple(artifacts))
            for version, artifacts in grouped.items()
        }

    async def _metadata_from_pep658(self, candidate: Candidate, wheel: ArtifactLink) -> Metadata:
        url = wheel.metadata_url
        key = metadata_key(candidate.name, str(candidate.version), wheel.url.split("#", 1)[0], wheel.sha256 or "")

        async def producer(directory: Path):
            response = await self.context.client.get(url)
            if response.status == 404:
                raise NotFound(candidate.name, str(candidate.version), detail="metadata file missing")
            if not response.ok:
                raise NetworkError(safe_url(url), f"HTTP {response.status}")
            expected = wheel.metadata_sha256
            if expected:
                actual = hashlib.sha256(response.body).hexdigest()
                if actual != expected:
                    raise NetworkError(safe_url(url), f"metadata sha256 mismatch: expected {expected}, got {actual}")
            (directory / METADATA_FILE).write_bytes(response.body)
            return {"origin_url": safe_url(url)}

        entry = await self.context.cache.put(key, producer)
        return parse_core_metadata(entry.read_bytes(METADATA_FILE), tags=sorted(wheel.wheel_tags(), key=str))

    async def _metadata_from_wheel(self, candidate: Candidate, wheel: ArtifactLink) -> Metadata:
        key = metadata_key(candidate.name, str(candidate.version), wheel.url.split("#", 1)[0], wheel.sha256 or "")

        async def producer(directory: Path):
            path = await download_artifact(self.context, candidate.name, str(candidate.version), wheel)
            (directory / METADATA_FILE).write_bytes(read_wheel_metadata_bytes(path))
            return {"origin_url": safe_url(wheel.url)}

        entry = await self.context.cache.put(key, producer)
        return parse_core_metadata(entry.read_bytes(METADATA_FILE), tags=sorted(wheel.wheel_tags(), key=str))

    async def metadata(self, candidate: Candidate) -> Metadata:
        wheel = candidate.best_wheel(self.context.environment)
        if wheel is not None:
            if wheel.metadata_url:
                try:
                    metadata = await self._metadata_from_pep658(candidate, wheel)
                    return _check_identity(candidate.name, metadata, candidate.version)
                except NotFound:
                    logger.debug("No metadata file for %s; reading the wheel", wheel.filename)
            metadata = await self._metadata_from_wheel(candidate, wheel)
            return _check_identity(candidate.name, metadata, candidate.version)

        sdist = candidate.sdist()
        if sdist is None:
            raise MetadataUnavailable(
                candidate.name,
                f"no wheel for {candidate} is compatible with this environment and there is no source distribution",
            )
        builder = self.context.require_builder(candidate.name)
        archive = await download_artifact(self.context, candidate.name, str(candidate.version), sdist)
        metadata = await builder.metadata(archive, candidate.name, fingerprint=sdist.sha256)
        return _check_identity(candidate.name, metadata, candidate.version)

    async def fetch_wheel(self, candidate: Candidate) -> Path:
        wheel = candidate.best_wheel(self.context.environment)
        if wheel is not None:
            return await download_artifact(self.context, candidate.name, str(candidate.version), wheel)
        sdist = candidate.sdist()
        if sdist is None:
            raise NotFound(candidate.name, str(candidate.version), detail="no compatible wheel or source distribution")
        builder = self.context.require_builder(candidate.name)
        archive = await download_artifact(self.context, candidate.name, str(candidate.version), sdist)
        return await builder.build_wheel(archive, candidate.name, fingerprint=sdist.sha256)


class DirectUrlHandler:
    """A single wheel or source archive at an HTTP(S) URL."""

    kind = SourceKind.DIRECT_URL

    def __init__(self, context: SourceContext):
        self.context = context
        self._metadata: Dict[Tuple[str, SourceSpec], Metadata] = {}

    def _link(self, source: DirectUrlSource) -> ArtifactLink:
        return ArtifactLink(filename=_url_filename(source.url), url=source.url, hashes=source.hashes)

    async def list(self, name: str, source: DirectUrlSource) -> CandidateFactories:
        link = self._link(source)
        if not (link.is_wheel or link.is_sdist):
            raise NotFound(safe_url(source.url), detail="URL is neither a wheel nor a source archive")
        path = await download_artifact(self.context, name or "_", "", link)
        if link.is_wheel:
            metadata = read_wheel_metadata(path)
        else:
            builder = self.context.require_builder(name or link.filename)
            metadata = await builder.metadata(path, name, fingerprint=link.sha256 or file_sha256(path))
        _check_identity(name, metadata)
        candidate = Candidate(metadata.name, metadata.version, source, (link,), str(path))
        self._metadata[(metadata.name, source)] = metadata
        return {metadata.version: lambda: candidate}

    async def metadata(self, candidate: Candidate) -> Metadata:
        cached = self._metadata.get((candidate.name, candidate.source))
        if cached is not None:
            return cached
        await self.list(candidate.name, candidate.source)
        return self._metadata[(candidate.name, candidate.source)]

    async def fetch_wheel(self, candidate: Candidate) -> Path:
        path = Path(candidate.location)
        if path.name.endswith(".whl"):
            return path
        builder = self.context.require_builder(candidate.name)
        return await builder.build_wheel(path, candidate.name)


class VcsHandler:
    """Git repositories, checked out per commit."""

    kind = SourceKind.VCS

    def __init__(self, context: SourceContext):
        self.context = context
        self._metadata: Dict[Tuple[str, SourceSpec], Metadata] = {}

    @staticmethod
    def _fingerprint(source: VcsSource, commit: str) -> str:
        return f"git:{commit}:{source.subdirectory or ''}"

    async def list(self, name: str, source: VcsSource) -> CandidateFactories:
        commit, project = await self.context.git.checkout(source)
        precise = VcsSource(source.vcs, source.url, commit, source.subdirectory)
        metadata = static_metadata(project)
        if metadata is None:
            builder = self.context.require_builder(name or source.url)
            metadata = await builder.metadata(project, name, fingerprint=self._fingerprint(source, commit))
        _check_identity(name, metadata)
        candidate = Candidate(metadata.name, metadata.version, precise, (), str(project))
        self._metadata[(metadata.name, precise)] = metadata
        logger.debug(
            "Resolved %s to %s",
            source.to_url(),
            commit,
            extra=extra_context(event="vcs_resolved", component="provider", package=metadata.name),
        )
        return {metadata.version: lambda: candidate}

    async def metadata(self, candidate: Candidate) -> Metadata:
        cached = self._metadata.get((candidate.name, candidate.source))
        if cached is not None:
            return cached
        await self.list(candidate.name, candidate.source)
        return self._metadata[(candidate.name, candidate.source)]

    async def fetch_wheel(self, candidate: Candidate) -> Path:
        source = candidate.source
        builder = self.context.require_builder(candidate.name)
        return await builder.build_wheel(
            Path(candidate.location), candidate.name, fingerprint=self._fingerprint(source, source.rev or "")
        )


class PathHandler:
    """Local source trees, wheel files and source archives."""

    kind = SourceKind.PATH

    def __init__(self, context: SourceContext):
        self.context = context
        self._metadata: Dict[Tuple[str, SourceSpec], Metadata] = {}

    async def list(self, name: str, source: PathSource) -> CandidateFactories:
        path = Path(os.path.expanduser(source.path))
        if not path.exists():
            raise NotFound(name or source.path, detail=f"path {source.path} does not exist")
        if path.is_dir():
            metadata = static_metadata(path)
            if metadata is None:
                builder = self.context.require_builder(name or path.name)
                metadata = await builder.metadata(path, name)
            artifacts = ()
        elif path.name.endswith(".whl"):
            metadata = read_wheel_metadata(path)
            artifacts = (ArtifactLink(filename=path.name, url=path.resolve().as_uri()),)
        else:
            builder = self.context.require_builder(name or path.name)
            metadata = await builder.metadata(path, name)
            artifacts = (ArtifactLink(filename=path.name, url=path.resolve().as_uri()),)
        _check_identity(name, metadata)
        candidate = Candidate(metadata.name, metadata.version, source, artifacts, str(path))
        self._metadata[(metadata.name, source)] = metadata
        return {metadata.version: lambda: candidate}

    async def metadata(self, candidate: Candidate) -> Metadata:
        cached = self._metadata.get((candidate.name, candidate.source))
        if cached is not None:
            return cached
        await self.list(candidate.name, candidate.source)
        return self._metadata[(candidate.name, candidate.source)]

    async def fetch_wheel(self, candidate: Candidate) -> Path:
        path = Path(candidate.location)
        if path.is_file() and path.name.endswith(".whl"):
            return path
        builder = self.context.require_builder(candidate.name)
        return await builder.build_wheel(path, candidate.name)


HANDLERS = {
    SourceKind.REGISTRY: RegistryHandler,
    SourceKind.DIRECT_URL: DirectUrlHandler,
    SourceKind.VCS: VcsHandler,
    SourceKind.PATH: PathHandler,
}
