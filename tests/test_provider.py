"""Tests for DistributionProvider and Session against a scripted package index."""
import asyncio
from unittest.mock import patch

import pytest
from packaging.version import Version

from depforge.errors import BuildFailure, NetworkError, NotFound, ResolutionConflict
from depforge.operations import Session
from depforge.registry.provider import DistributionProvider
from depforge.versioning import parse
from depforge.versioning.models import PathSource, SourceKind

from conftest import FILES, INDEX, FakeClient, FakeIndex, make_environment, make_wheel


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def index(client, tmp_path):
    return FakeIndex(client, tmp_path / "published")


@pytest.fixture
def dist_provider(cache, client):
    return DistributionProvider(cache, client, environment=make_environment(), index_urls=[INDEX])


def requested_urls(client):
    return [url for url, _ in client.requests]


class TestCandidates:
    """Listing candidates."""

    def test_newest_first_and_lazy(self, index, client, dist_provider):
        for version in ["1.0", "2.0", "1.5"]:
            index.publish("demo", version)

        async def run():
            sequence = dist_provider.candidates("Demo")
            assert client.requests == []
            await sequence.load()
            return sequence

        sequence = asyncio.run(run())

        assert sequence.versions == [Version("2.0"), Version("1.5"), Version("1.0")]
        assert [c.version for c in sequence][0] == Version("2.0")
        assert requested_urls(client) == [INDEX + "demo/"]

    def test_unknown_package(self, dist_provider):
        async def run():
            await dist_provider.candidates("nothing").load()

        with pytest.raises(NotFound):
            asyncio.run(run())


class TestMetadata:
    """Reading candidate metadata."""

    def test_metadata_file_is_used(self, index, client, dist_provider):
        index.publish("demo", "1.0", ["idna>=2"])

        async def run():
            sequence = await dist_provider.candidates("demo").load()
            candidate = sequence.get(Version("1.0"))
            return await asyncio.gather(dist_provider.metadata(candidate), dist_provider.metadata(candidate))

        first, second = asyncio.run(run())

        assert [str(r) for r in first.requires_dist] == ["idna>=2"]
        assert first is second
        metadata_requests = [u for u in requested_urls(client) if u.endswith(".metadata")]
        assert metadata_requests == [FILES + "demo-1.0-py3-none-any.whl.metadata"]
        assert not any(u.endswith(".whl") for u in requested_urls(client))

    def test_falls_back_to_wheel(self, client, tmp_path, cache):
        index = FakeIndex(client, tmp_path / "published", metadata_files=False)
        index.publish("demo", "1.0", ["idna"])
        provider = DistributionProvider(cache, client, environment=make_environment(), index_urls=[INDEX])

        async def run():
            sequence = await provider.candidates("demo").load()
            return await provider.metadata(sequence.get(Version("1.0")))

        metadata = asyncio.run(run())

        assert [r.name for r in metadata.requires_dist] == ["idna"]
        assert FILES + "demo-1.0-py3-none-any.whl" in requested_urls(client)

    def test_metadata_needing_itself_fails(self, index, dist_provider):
        index.publish("demo", "1.0")
        handler = dist_provider._handlers[SourceKind.REGISTRY]

        async def reentrant(candidate):
            return await dist_provider.metadata(candidate)

        async def run():
            sequence = await dist_provider.candidates("demo").load()
            with patch.object(handler, "metadata", reentrant):
                return await asyncio.wait_for(dist_provider.metadata(sequence.get(Version("1.0"))), 10)

        with pytest.raises(BuildFailure) as excinfo:
            asyncio.run(run())
        assert "cyclic build dependency" in str(excinfo.value)

    def test_prefetch_can_be_cancelled(self, index, dist_provider):
        index.publish("demo", "1.0")

        async def run():
            sequence = await dist_provider.candidates("demo").load()
            candidate = sequence.get(Version("1.0"))
            dist_provider.prefetch(candidate)
            return dist_provider.cancel_pending([candidate])

        assert asyncio.run(run()) == 1


class TestFetchWheel:
    """Downloading wheels into the cache."""

    def test_download_is_cached(self, index, client, dist_provider):
        index.publish("demo", "1.0")

        async def run():
            sequence = await dist_provider.candidates("demo").load()
            candidate = sequence.get(Version("1.0"))
            return await dist_provider.fetch_wheel(candidate), await dist_provider.fetch_wheel(candidate)

        first, second = asyncio.run(run())

        assert first == second
        assert first.is_file()
        assert requested_urls(client).count(FILES + "demo-1.0-py3-none-any.whl") == 1

    def test_hash_mismatch(self, index, dist_provider):
        index.publish("demo", "1.0", sha256="0" * 64)

        async def run():
            sequence = await dist_provider.candidates("demo").load()
            return await dist_provider.fetch_wheel(sequence.get(Version("1.0")))

        with pytest.raises(NetworkError):
            asyncio.run(run())


class TestLocalSources:
    """Path sources."""

    def test_identify_local_wheel(self, tmp_path, dist_provider):
        path = make_wheel(tmp_path / "local", "localpkg", "0.3", {"localpkg/__init__.py": b""})
        requirement = parse(str(path))

        named = asyncio.run(dist_provider.identify(requirement))

        assert named.name == "localpkg"
        assert isinstance(named.source, PathSource)


class TestSession:
    """Resolve and install through the full stack."""

    def test_resolve_and_install(self, tmp_path, cache, client, index):
        index.publish("app", "1.0", ["lib>=1"])
        index.publish("lib", "1.0")
        index.publish("lib", "1.1")
        target_dir = tmp_path / "env"

        async def run():
            async with Session(cache=cache, client=client, index_urls=[INDEX], environment=make_environment()) as session:
                report = await session.install([parse("app")], session.target(target_dir))
                results = await session.verify(session.target(target_dir))
            return report, results

        report, results = asyncio.run(run())

        assert sorted(str(r) for r in report.installed) == ["app==1.0", "lib==1.1"]
        assert results == {"app": [], "lib": []}
        assert (target_dir / "lib" / "__init__.py").exists()

    def test_conflict_through_session(self, cache, client, index):
        index.publish("a", "1.0", ["c<2.0"])
        index.publish("b", "1.0", ["c>=2.0"])
        index.publish("c", "1.0")
        index.publish("c", "2.0")

        async def run():
            async with Session(cache=cache, client=client, index_urls=[INDEX], environment=make_environment()) as session:
                await session.resolve([parse("a==1.0"), parse("b==1.0")])

        with pytest.raises(ResolutionConflict) as excinfo:
            asyncio.run(run())
        assert {"a", "b", "c"} <= excinfo.value.packages
