"""Shared fixtures: an in-memory distribution provider, a fake HTTP client and wheel builders."""
import asyncio
import base64
import hashlib
import json
import zipfile
from pathlib import Path

import pytest
from packaging.specifiers import SpecifierSet
from packaging.version import Version

from depforge.cache import Cache
from depforge.common.http_client import HttpResponse
from depforge.errors import MetadataUnavailable, NetworkError, NotFound
from depforge.registry.models import ArtifactLink, Candidate, Metadata
from depforge.registry.provider import CandidateSequence
from depforge.versioning import parse
from depforge.versioning.models import Environment

MARKERS = {
    "implementation_name": "cpython",
    "os_name": "posix",
    "platform_system": "Linux",
    "python_full_version": "3.11.4",
    "python_version": "3.11",
    "sys_platform": "linux",
}


def make_environment(**overrides):
    return Environment.from_dict(dict(MARKERS, **overrides), tags=["py3-none-any"])


class InMemoryProvider:
    """Stands in for ``DistributionProvider`` with releases declared in the test."""

    def __init__(self, environment=None, wheel_dir=None):
        self.environment = environment or make_environment()
        self.wheel_dir = wheel_dir
        self.releases = {}
        self.files = {}
        self.metadata_calls = []
        self.listing_calls = []
        self.prefetched = []
        self.broken_metadata = set()
        self.unavailable_metadata = set()
        self.metadata_delay = None
        self.listing_delay = None
        self._sequences = {}

    def add(self, name, version, requires=(), *, extras=None, requires_python=None, yanked=False, files=None):
        requires_dist = [parse(text) for text in requires]
        for extra, texts in (extras or {}).items():
            for text in texts:
                requires_dist.append(parse(f'{text}; extra == "{extra}"'))
        self.releases.setdefault(name, {})[Version(version)] = {
            "requires": tuple(requires_dist),
            "extras": frozenset(extras or ()),
            "requires_python": requires_python,
            "yanked": yanked,
        }
        if files is not None:
            self.files[(name, Version(version))] = files
        self._sequences = {key: seq for key, seq in self._sequences.items() if key[0] != name}
        return self

    def _candidate(self, name, version):
        info = self.releases[name][version]
        filename = f"{name.replace('-', '_')}-{version}-py3-none-any.whl"
        artifact = ArtifactLink(
            filename=filename,
            url=f"https://files.example.invalid/{filename}",
            requires_python=info["requires_python"],
            yanked="broken release" if info["yanked"] else None,
        )
        return Candidate(name, version, artifacts=(artifact,))

    def candidates(self, package, source=None):
        key = (package, source)
        sequence = self._sequences.get(key)
        if sequence is None:
            async def loader():
                self.listing_calls.append(package)
                await asyncio.sleep(self.listing_delay(package) if self.listing_delay else 0)
                if package not in self.releases:
                    raise NotFound(package, detail="not on any index")
                return {v: (lambda v=v: self._candidate(package, v)) for v in self.releases[package]}

            sequence = self._sequences[key] = CandidateSequence(package, loader)
        return sequence

    async def identify(self, requirement):
        return requirement

    async def metadata(self, candidate):
        key = (candidate.name, str(candidate.version))
        self.metadata_calls.append(key)
        await asyncio.sleep(self.metadata_delay(candidate) if self.metadata_delay else 0)
        if key in self.broken_metadata:
            raise NetworkError(f"https://files.example.invalid/{candidate.name}", "HTTP 500", 3)
        if key in self.unavailable_metadata:
            raise MetadataUnavailable(candidate.name, "no wheel or sdist could be read")
        info = self.releases[candidate.name][candidate.version]
        return Metadata(
            name=candidate.name,
            version=candidate.version,
            requires_dist=info["requires"],
            provides_extra=info["extras"],
            requires_python=SpecifierSet(info["requires_python"] or ""),
        )

    def prefetch(self, candidate):
        self.prefetched.append(candidate)

    def cancel_pending(self, candidates=None):
        return 0

    async def fetch_wheel(self, candidate):
        files = self.files.get((candidate.name, candidate.version), {f"{candidate.name.replace('-', '_')}/__init__.py": b""})
        return make_wheel(self.wheel_dir, candidate.name, str(candidate.version), files)


def _record_hash(data):
    return "sha256=" + base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode("ascii").rstrip("=")


def make_wheel(directory, name, version, files, requires=()):
    """Write a minimal, valid wheel with ``files`` (relative path -> bytes)."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    project = name.replace("-", "_")
    dist_info = f"{project}-{version}.dist-info"
    metadata = f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n"
    metadata += "".join(f"Requires-Dist: {r}\n" for r in requires)
    members = dict(files)
    members[f"{dist_info}/METADATA"] = metadata.encode("utf-8")
    members[f"{dist_info}/WHEEL"] = b"Wheel-Version: 1.0\nGenerator: tests\nRoot-Is-Purelib: true\nTag: py3-none-any\n"
    record_lines = [f"{path},{_record_hash(data)},{len(data)}" for path, data in members.items()]
    record_lines.append(f"{dist_info}/RECORD,,")
    members[f"{dist_info}/RECORD"] = ("\n".join(record_lines) + "\n").encode("utf-8")
    path = directory / f"{project}-{version}-py3-none-any.whl"
    with zipfile.ZipFile(path, "w") as archive:
        for member, data in members.items():
            archive.writestr(member, data)
    return path


class FakeClient:
    """Scripted replacement for ``NetworkClient``: maps URLs to lists of responses."""

    def __init__(self, responses=None, offline=False):
        self.responses = {url: list(items) for url, items in (responses or {}).items()}
        self.requests = []
        self.offline = offline

    def add(self, url, status=200, body=b"", headers=None):
        self.responses.setdefault(url, []).append(HttpResponse(url, status, dict(headers or {}), body))
        return self

    async def get(self, url, *, headers=None):
        if self.offline:
            raise NetworkError(url, "network access disabled (offline mode)", 0)
        self.requests.append((url, dict(headers or {})))
        queue = self.responses.get(url)
        if not queue:
            return HttpResponse(url, 404, {}, b"")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def download(self, url, dest):
        response = await self.get(url.split("#", 1)[0])
        if response.status == 404:
            raise NotFound(url, detail="HTTP 404")
        if not response.ok:
            raise NetworkError(url, f"HTTP {response.status}")
        Path(dest).write_bytes(response.body)
        return hashlib.sha256(response.body).hexdigest()

    async def start(self):
        return None

    async def stop(self):
        return None


INDEX = "https://pypi.example.invalid/simple/"
FILES = "https://files.example.invalid/"


class FakeIndex:
    """Publishes wheels through a ``FakeClient`` as PEP 691 listings with PEP 658 metadata."""

    def __init__(self, client, wheel_dir, metadata_files=True):
        self.client = client
        self.wheel_dir = wheel_dir
        self.metadata_files = metadata_files
        self.projects = {}

    def publish(self, name, version, requires=(), files=None, sha256=None):
        files = files or {f"{name}/__init__.py": b""}
        path = make_wheel(self.wheel_dir / f"{name}-{version}", name, version, files, requires)
        body = path.read_bytes()
        url = FILES + path.name
        self.client.add(url, 200, body)
        if self.metadata_files:
            metadata = f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n"
            metadata += "".join(f"Requires-Dist: {r}\n" for r in requires)
            self.client.add(url + ".metadata", 200, metadata.encode())
        self.projects.setdefault(name, []).append({
            "filename": path.name,
            "url": url,
            "hashes": {"sha256": sha256 or hashlib.sha256(body).hexdigest()},
            "core-metadata": self.metadata_files,
        })
        self.client.responses[INDEX + name + "/"] = []
        self.client.add(
            INDEX + name + "/",
            200,
            json.dumps({"name": name, "files": self.projects[name]}).encode(),
            {"Content-Type": "application/vnd.pypi.simple.v1+json"},
        )
        return path


@pytest.fixture
def environment():
    return make_environment()


@pytest.fixture
def provider(tmp_path):
    return InMemoryProvider(wheel_dir=tmp_path / "wheels")


@pytest.fixture
def cache(tmp_path):
    return Cache(tmp_path / "cache", lock_timeout=5)


@pytest.fixture
def fake_client():
    return FakeClient()
