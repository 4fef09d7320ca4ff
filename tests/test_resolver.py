"""Tests for the PubGrub resolver over an in-memory provider."""
import asyncio
import random
import re
from unittest.mock import patch

import pytest
from packaging.version import Version

from depforge.constants import ExitCodes, PrereleaseMode, UpgradePolicy
from depforge.errors import NetworkError, ResolutionConflict
from depforge.resolver import Resolver
from depforge.versioning import parse

from conftest import InMemoryProvider


def resolve(provider, *texts, constraints=(), **options):
    resolver = Resolver(provider, constraints=[parse(c) for c in constraints], **options)
    return asyncio.run(resolver.resolve([parse(text) for text in texts]))


def assert_sound(graph, provider):
    """Every edge is satisfied by the selected version of its child."""
    for edge in graph.edges:
        assert edge.child in graph, f"{edge.child} required by {edge.parent} is missing"
        assert edge.requirement.specifier.contains(graph[edge.child].version, prereleases=True)
    for node in graph:
        assert node.version in provider.releases[node.name]


class TestSelection:
    """Newest-first selection within the requested range."""

    def test_newest_satisfying_version(self, provider):
        for version in ["1.0", "1.5", "1.9", "2.0"]:
            provider.add("pkg", version)

        graph = resolve(provider, "pkg>=1.0,<2.0")

        assert graph["pkg"].version == Version("1.9")
        assert len(graph) == 1

    def test_transitive_dependencies(self, provider):
        provider.add("app", "1.0", ["lib>=1.0"])
        provider.add("lib", "1.0")
        provider.add("lib", "2.0", ["util<3"])
        provider.add("util", "2.5")
        provider.add("util", "3.0")

        graph = resolve(provider, "app")

        assert graph.versions() == {
            "app": Version("1.0"),
            "lib": Version("2.0"),
            "util": Version("2.5"),
        }
        assert [e.child for e in graph.dependencies("app")] == ["lib"]
        assert [e.child for e in graph.dependencies(None)] == ["app"]
        assert_sound(graph, provider)

    def test_backtracks_to_older_version(self, provider):
        provider.add("a", "1.0")
        provider.add("a", "2.0", ["c==1.0"])
        provider.add("b", "1.0", ["c==2.0"])
        provider.add("c", "1.0")
        provider.add("c", "2.0")

        graph = resolve(provider, "a", "b")

        assert graph.versions() == {"a": Version("1.0"), "b": Version("1.0"), "c": Version("2.0")}
        assert_sound(graph, provider)

    def test_unrelated_packages_are_not_selected(self, provider):
        provider.add("pkg", "1.0", ['helper; extra == "never"'])
        provider.add("helper", "1.0")
        provider.add("unused", "1.0")

        graph = resolve(provider, "pkg")

        assert list(graph.versions()) == ["pkg"]

    def test_yanked_only_for_exact_pin(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "1.1", yanked=True)

        assert resolve(provider, "pkg")["pkg"].version == Version("1.0")
        assert resolve(InMemoryProvider().add("pkg", "1.0").add("pkg", "1.1", yanked=True), "pkg==1.1")[
            "pkg"
        ].version == Version("1.1")

    def test_requires_python_mismatch_is_skipped(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0", requires_python=">=3.12")

        assert resolve(provider, "pkg")["pkg"].version == Version("1.0")

    def test_unreadable_metadata_makes_version_unavailable(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0")
        provider.unavailable_metadata.add(("pkg", "2.0"))

        assert resolve(provider, "pkg")["pkg"].version == Version("1.0")

    def test_network_failure_aborts_resolution(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0")
        provider.broken_metadata.add(("pkg", "2.0"))

        with pytest.raises(NetworkError) as excinfo:
            resolve(provider, "pkg")
        assert excinfo.value.exit_code is ExitCodes.CONNECTION_ERROR
        assert ("pkg", "1.0") not in provider.metadata_calls


class TestPrereleases:
    """Pre-release selection policy."""

    def test_stable_preferred(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0b1")
        assert resolve(provider, "pkg")["pkg"].version == Version("1.0")

    def test_explicit_prerelease_specifier(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0b1")
        assert resolve(provider, "pkg>=2.0b1")["pkg"].version == Version("2.0b1")

    def test_prerelease_used_when_nothing_else(self, provider):
        provider.add("pkg", "1.0a1")
        assert resolve(provider, "pkg")["pkg"].version == Version("1.0a1")

    def test_disallow_fails(self, provider):
        provider.add("pkg", "1.0a1")
        with pytest.raises(ResolutionConflict):
            resolve(provider, "pkg", prereleases=PrereleaseMode.DISALLOW)

    def test_allow_picks_newest_prerelease(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0rc1")
        assert resolve(provider, "pkg", prereleases=PrereleaseMode.ALLOW)["pkg"].version == Version("2.0rc1")


class TestExtrasAndMarkers:
    """Extras pull in extra dependencies; markers filter dependencies."""

    def test_extra_adds_dependencies(self, provider):
        provider.add("web", "1.0", ["core>=1"], extras={"tls": ["crypto>=2"]})
        provider.add("core", "1.0")
        provider.add("crypto", "2.1")

        plain = resolve(provider, "web")
        with_extra = resolve(InMemoryProvider().add("web", "1.0", ["core>=1"], extras={"tls": ["crypto>=2"]})
                             .add("core", "1.0").add("crypto", "2.1"), "web[tls]")

        assert "crypto" not in plain
        assert with_extra["crypto"].version == Version("2.1")
        assert with_extra["web"].extras == frozenset({"tls"})
        assert with_extra["web"].version == Version("1.0")

    def test_extra_pins_base_version(self, provider):
        provider.add("web", "1.0", extras={"tls": ["crypto"]})
        provider.add("web", "2.0")
        provider.add("crypto", "1.0")

        graph = resolve(provider, "web[tls]", "web<2")

        assert graph["web"].version == Version("1.0")
        assert "crypto" in graph

    def test_markers_filter_requirements(self, provider):
        provider.add("pkg", "1.0", ['winhelper; sys_platform == "win32"', 'posixhelper; os_name == "posix"'])
        provider.add("posixhelper", "1.0")
        provider.add("winhelper", "1.0")

        graph = resolve(provider, "pkg", 'other; python_version < "3"')

        assert sorted(graph.versions()) == ["pkg", "posixhelper"]


class TestConstraintsAndPreferences:
    """Constraints restrict without adding; preferences are honoured unless upgraded."""

    def test_constraint_restricts_version(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "2.0")

        graph = resolve(provider, "pkg", constraints=["pkg<2", "unrelated<1"])

        assert graph["pkg"].version == Version("1.0")
        assert "unrelated" not in graph

    def test_constraint_conflict(self, provider):
        provider.add("pkg", "2.0")
        with pytest.raises(ResolutionConflict) as excinfo:
            resolve(provider, "pkg", constraints=["pkg<2"])
        assert "pkg" in excinfo.value.packages

    def test_preference_is_used(self, provider):
        for version in ["1.0", "1.5", "1.9"]:
            provider.add("pkg", version)
        graph = resolve(provider, "pkg", preferences={"pkg": "1.5"})
        assert graph["pkg"].version == Version("1.5")

    def test_preference_outside_range_is_ignored(self, provider):
        provider.add("pkg", "1.0")
        provider.add("pkg", "1.9")
        graph = resolve(provider, "pkg>=1.5", preferences={"pkg": "1.0"})
        assert graph["pkg"].version == Version("1.9")

    @pytest.mark.parametrize(
        "options",
        [
            {"upgrade": UpgradePolicy.ALL},
            {"upgrade": UpgradePolicy.PACKAGES, "upgrade_packages": ["PKG"]},
        ],
    )
    def test_upgrade_releases_preference(self, provider, options):
        for version in ["1.0", "1.5", "1.9"]:
            provider.add("pkg", version)
        graph = resolve(provider, "pkg", preferences={"pkg": "1.5"}, **options)
        assert graph["pkg"].version == Version("1.9")


class TestConflicts:
    """Unsatisfiable requirements produce an explanation."""

    def test_conflict_names_every_package(self, provider):
        provider.add("a", "1.0", ["c<2.0"])
        provider.add("b", "1.0", ["c>=2.0"])
        provider.add("c", "1.0")
        provider.add("c", "2.0")
        provider.add("d", "1.0")
        provider.add("d", "1.1")

        with pytest.raises(ResolutionConflict) as excinfo:
            resolve(provider, "a==1.0", "b==1.0", "d")

        error = excinfo.value
        assert error.packages == {"a", "b", "c"}
        assert not re.search(r"\bd\b", error.explanation)
        assert error.lines
        assert error.lines[-1].endswith("version solving failed.")
        text = error.explanation
        for name in ("a", "b", "c"):
            assert name in text
        assert error.exit_code is ExitCodes.RESOLUTION_CONFLICT

    def test_missing_package(self, provider):
        with pytest.raises(ResolutionConflict) as excinfo:
            resolve(provider, "doesnotexist")
        assert "doesnotexist" in excinfo.value.explanation

    def test_no_matching_version(self, provider):
        provider.add("pkg", "1.0")
        with pytest.raises(ResolutionConflict) as excinfo:
            resolve(provider, "pkg>=3")
        assert "pkg" in excinfo.value.packages
        assert ">=3" in excinfo.value.explanation

    def test_background_work_is_cancelled_on_failure(self, provider):
        provider.add("pkg", "1.0")
        with patch.object(provider, "cancel_pending", wraps=provider.cancel_pending) as spy:
            with pytest.raises(ResolutionConflict):
                resolve(provider, "pkg>=3")
        spy.assert_called_once()


class ScrambledProvider(InMemoryProvider):
    """Fetches metadata in background tasks that complete in a seeded random order."""

    def __init__(self, seed):
        super().__init__()
        rng = random.Random(seed)
        self.metadata_delay = lambda candidate: rng.random() / 200
        self.listing_delay = lambda package: rng.random() / 200
        self._tasks = {}

    def _task(self, candidate):
        key = (candidate.name, candidate.version)
        task = self._tasks.get(key)
        if task is None:
            task = self._tasks[key] = asyncio.ensure_future(InMemoryProvider.metadata(self, candidate))
        return task

    def prefetch(self, candidate):
        super().prefetch(candidate)
        self._task(candidate)

    async def metadata(self, candidate):
        return await asyncio.shield(self._task(candidate))

    def cancel_pending(self, candidates=None):
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)


class TestDeterminism:
    """Identical inputs give identical graphs."""

    @staticmethod
    def _provider(provider=None):
        provider = provider if provider is not None else InMemoryProvider()
        provider.add("app", "1.0", ["lib>=1", "extra-lib"])
        provider.add("app", "2.0", ["lib>=2", "extra-lib<2"])
        provider.add("lib", "1.0")
        provider.add("lib", "2.0", ["extra-lib>=1.5"])
        provider.add("extra-lib", "1.0")
        provider.add("extra-lib", "1.5")
        provider.add("extra-lib", "2.0")
        return provider

    def test_repeated_resolution_is_identical(self):
        first = resolve(self._provider(), "app")
        second = resolve(self._provider(), "app")

        assert first == second
        assert first.to_json() == second.to_json()
        assert first.versions() == {
            "app": Version("2.0"),
            "lib": Version("2.0"),
            "extra-lib": Version("1.5"),
        }

    def test_requirement_order_does_not_matter_for_result(self):
        first = resolve(self._provider(), "app", "lib")
        second = resolve(self._provider(), "lib", "app")
        assert first.versions() == second.versions()

    @staticmethod
    def _backtracking(provider):
        provider.add("app", "1.0", ["lib", "legacy"])
        provider.add("lib", "1.0", ["base>=1"])
        provider.add("lib", "2.0", ["base>=2", "util[fast]"])
        provider.add("base", "1.0")
        provider.add("base", "2.0")
        provider.add("util", "1.0", extras={"fast": ["speedups"]})
        provider.add("speedups", "0.9")
        provider.add("legacy", "1.0", ["base<2"])
        for minor in range(1, 8):
            provider.add("legacy", f"1.{minor}", ["gone-package"])
        return provider

    @pytest.mark.parametrize("seed", range(6))
    def test_network_arrival_order_does_not_matter(self, seed):
        expected = resolve(self._provider(), "app").to_json()
        scrambled = self._provider(ScrambledProvider(seed))

        assert resolve(scrambled, "app").to_json() == expected

    @pytest.mark.parametrize("seed", range(6))
    def test_arrival_order_with_backtracking_and_prefetch(self, seed):
        expected = resolve(self._backtracking(InMemoryProvider()), "app")
        scrambled = self._backtracking(ScrambledProvider(seed))

        result = resolve(scrambled, "app")

        assert result.to_json() == expected.to_json()
        assert result.versions() == {
            "app": Version("1.0"),
            "lib": Version("1.0"),
            "base": Version("1.0"),
            "legacy": Version("1.0"),
        }
        assert len(scrambled.prefetched) > 1


class TestGraph:
    """Result graph helpers."""

    def test_install_order_puts_dependencies_first(self, provider):
        provider.add("app", "1.0", ["lib"])
        provider.add("lib", "1.0", ["base"])
        provider.add("base", "1.0")

        order = [node.name for node in resolve(provider, "app").install_order()]

        assert order == ["base", "lib", "app"]

    def test_lock_document(self, provider):
        provider.add("app", "1.0", ["lib"])
        provider.add("lib", "1.0")

        lock = resolve(provider, "app").to_lock()

        assert lock["version"] == 1
        assert lock["requirements"] == ["app"]
        assert [p["name"] for p in lock["packages"]] == ["app", "lib"]
        assert lock["packages"][0]["dependencies"] == ["lib"]

    def test_requirements_output(self, provider):
        provider.add("app", "1.0", ["lib"])
        provider.add("lib", "1.0")

        text = resolve(provider, "app").to_requirements()

        assert "app==1.0\n" in text
        assert "lib==1.0\n    # via app\n" in text
