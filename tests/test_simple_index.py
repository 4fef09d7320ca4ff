"""Tests for index listing parsing, artifact selection and core metadata."""
import asyncio
import json

import pytest
from packaging.version import Version

from depforge.errors import MetadataUnavailable, NotFound
from depforge.registry.models import ArtifactLink, Candidate, parse_core_metadata
from depforge.registry.simple import SimpleIndex, group_by_version, parse_simple_html, parse_simple_json

from conftest import FakeClient, make_environment

BASE = "https://pypi.example.invalid/simple/demo/"

HTML = """<!DOCTYPE html>
<html><body>
<a href="../../files/demo-1.0.tar.gz#sha256=aaa">demo-1.0.tar.gz</a>
<a href="../../files/demo-1.0-py3-none-any.whl#sha256=bbb" data-requires-python="&gt;=3.8"
   data-core-metadata="sha256=ccc">demo-1.0-py3-none-any.whl</a>
<a href="../../files/demo-1.1-py3-none-any.whl" data-yanked="broken">demo-1.1-py3-none-any.whl</a>
<a href="../../files/other-2.0-py3-none-any.whl">other-2.0-py3-none-any.whl</a>
<a href="../../files/demo-1.2.exe">demo-1.2.exe</a>
</body></html>
"""


class TestParsing:
    """HTML and JSON project pages."""

    def test_html_links(self):
        links = parse_simple_html(HTML, BASE)

        sdist, wheel, yanked = links[:3]
        assert sdist.url == "https://pypi.example.invalid/files/demo-1.0.tar.gz#sha256=aaa"
        assert sdist.sha256 == "aaa"
        assert wheel.requires_python == ">=3.8"
        assert wheel.core_metadata == (("sha256", "ccc"),)
        assert wheel.metadata_url == "https://pypi.example.invalid/files/demo-1.0-py3-none-any.whl.metadata"
        assert yanked.is_yanked and yanked.yanked == "broken"
        assert not wheel.is_yanked

    def test_json_links(self):
        data = {
            "name": "demo",
            "files": [
                {
                    "filename": "demo-2.0-py3-none-any.whl",
                    "url": "https://files.example.invalid/demo-2.0-py3-none-any.whl",
                    "hashes": {"sha256": "ddd"},
                    "requires-python": ">=3.9",
                    "core-metadata": {"sha256": "eee"},
                    "yanked": False,
                },
                {
                    "filename": "demo-1.9.tar.gz",
                    "url": "../../files/demo-1.9.tar.gz",
                    "hashes": {},
                    "yanked": True,
                },
            ],
        }

        wheel, sdist = parse_simple_json(data, BASE)

        assert wheel.sha256 == "ddd"
        assert wheel.metadata_sha256 == "eee"
        assert not wheel.is_yanked
        assert sdist.url == "https://pypi.example.invalid/files/demo-1.9.tar.gz"
        assert sdist.is_yanked and sdist.yanked == ""
        assert sdist.core_metadata is False

    def test_group_by_version_drops_foreign_and_unknown_files(self):
        grouped = group_by_version("Demo", parse_simple_html(HTML, BASE))

        assert sorted(grouped) == [Version("1.0"), Version("1.1")]
        assert len(grouped[Version("1.0")]) == 2


class TestCandidate:
    """Artifact selection on a candidate."""

    def test_best_wheel_prefers_compatible(self):
        links = (
            ArtifactLink("demo-1.0-cp311-cp311-win_amd64.whl", "https://x/demo-1.0-cp311-cp311-win_amd64.whl"),
            ArtifactLink("demo-1.0-py3-none-any.whl", "https://x/demo-1.0-py3-none-any.whl"),
            ArtifactLink("demo-1.0.tar.gz", "https://x/demo-1.0.tar.gz"),
        )
        candidate = Candidate("demo", Version("1.0"), artifacts=links)

        assert candidate.best_wheel(make_environment()).filename == "demo-1.0-py3-none-any.whl"
        assert candidate.sdist().filename == "demo-1.0.tar.gz"

    def test_yanked_only_when_every_artifact_is(self):
        links = (
            ArtifactLink("demo-1.0.tar.gz", "https://x/a", yanked="bad"),
            ArtifactLink("demo-1.0-py3-none-any.whl", "https://x/b"),
        )
        assert not Candidate("demo", Version("1.0"), artifacts=links).is_yanked
        assert Candidate("demo", Version("1.0"), artifacts=links[:1]).is_yanked

    def test_requires_python(self):
        link = ArtifactLink("demo-1.0-py3-none-any.whl", "https://x/b", requires_python=">=3.12")
        candidate = Candidate("demo", Version("1.0"), artifacts=(link,))
        assert not candidate.allows_python(Version("3.11.4"))
        assert candidate.allows_python(Version("3.12.0"))


class TestCoreMetadata:
    """METADATA documents."""

    def test_parse(self):
        metadata = parse_core_metadata(
            "Metadata-Version: 2.1\n"
            "Name: Demo_Pkg\n"
            "Version: 1.0\n"
            "Requires-Python: >=3.8\n"
            "Provides-Extra: TLS\n"
            "Requires-Dist: idna>=2\n"
            'Requires-Dist: crypto; extra == "tls"\n'
        )

        assert metadata.name == "demo-pkg"
        assert metadata.provides_extra == frozenset({"tls"})
        env = make_environment()
        assert [r.name for r in metadata.dependencies(env)] == ["idna"]
        assert [r.name for r in metadata.extra_dependencies("tls", env)] == ["crypto"]

    def test_missing_version(self):
        with pytest.raises(MetadataUnavailable):
            parse_core_metadata("Metadata-Version: 2.1\nName: demo\n")

    def test_render_round_trip(self):
        original = parse_core_metadata("Metadata-Version: 2.1\nName: demo\nVersion: 2.0\nRequires-Dist: idna>=2\n")
        again = parse_core_metadata(original.to_core_metadata())
        assert again == original


class TestSimpleIndex:
    """Listing lookup across several indexes."""

    def test_falls_through_to_next_index(self, cache):
        client = FakeClient()
        client.add(
            "https://second.example.invalid/simple/demo/",
            200,
            json.dumps({"files": [{"filename": "demo-1.0.tar.gz", "url": "demo-1.0.tar.gz", "hashes": {}}]}).encode(),
            {"Content-Type": "application/vnd.pypi.simple.v1+json"},
        )
        index = SimpleIndex(client, cache, ["https://first.example.invalid/simple", "https://second.example.invalid/simple/"])

        index_url, links = asyncio.run(index.project_links("Demo"))

        assert index_url == "https://second.example.invalid/simple/"
        assert links[0].url == "https://second.example.invalid/simple/demo/demo-1.0.tar.gz"
        assert [url for url, _ in client.requests] == [
            "https://first.example.invalid/simple/demo/",
            "https://second.example.invalid/simple/demo/",
        ]

    def test_html_listing(self, cache):
        client = FakeClient().add(BASE, 200, HTML.encode(), {"Content-Type": "text/html"})
        index = SimpleIndex(client, cache, ["https://pypi.example.invalid/simple/"])

        _, links = asyncio.run(index.project_links("demo"))

        assert len(links) == 5

    def test_unknown_everywhere(self, cache):
        index = SimpleIndex(FakeClient(), cache, ["https://first.example.invalid/simple/"])
        with pytest.raises(NotFound):
            asyncio.run(index.project_links("nothing"))
