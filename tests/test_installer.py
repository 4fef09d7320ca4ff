"""Tests for atomic wheel installation, replacement, removal and verification."""
import asyncio
import zipfile
from unittest.mock import patch

import pytest

from depforge.constants import Constants
from depforge.errors import InstallFailure
from depforge.installer import Installer, TargetEnvironment
from depforge.installer.records import parse_record
from depforge.resolver import Resolver
from depforge.versioning import parse
from depforge.versioning.models import DirectUrlSource

from conftest import make_environment, make_wheel


@pytest.fixture
def target(tmp_path):
    return TargetEnvironment.at(tmp_path / "env", make_environment())


@pytest.fixture
def installer(provider):
    return Installer(provider, lock_timeout=5)


def wheel(tmp_path, name, version, files):
    return make_wheel(tmp_path / "wheels" / f"{name}-{version}", name, version, files)


def failing_on(filename):
    original = Installer._link_file

    def link_file(self, source, destination):
        if destination.name == filename:
            raise PermissionError(13, "Permission denied", str(destination))
        return original(self, source, destination)

    return link_file


class TestInstallWheel:
    """Single wheel installs."""

    def test_files_and_record_written(self, tmp_path, installer, target):
        path = wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b"X = 1\n", "demo/util.py": b""})

        record = installer.install_wheel(path, target, requested=True)

        assert (target.root / "demo" / "__init__.py").read_bytes() == b"X = 1\n"
        assert record.name == "demo"
        assert str(record.version) == "1.0"
        assert record.installer == Constants.INSTALLER_NAME
        assert (record.dist_info / "REQUESTED").exists()
        paths = {entry.path for entry in parse_record((record.dist_info / "RECORD").read_text())}
        assert {"demo/__init__.py", "demo/util.py", "demo-1.0.dist-info/INSTALLER"} <= paths
        assert installer.verify(target) == {"demo": []}

    def test_staging_is_cleaned_up(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b""}), target)
        assert list(target.staging_root.iterdir()) == []

    def test_direct_url_recorded(self, tmp_path, installer, target):
        path = wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b""})
        source = DirectUrlSource("https://files.example.invalid/demo-1.0-py3-none-any.whl")

        record = installer.install_wheel(path, target, source=source)

        assert record.direct_url["url"] == source.url
        assert record.matches_source(source)
        assert not record.matches_source(None)

    def test_hash_mismatch_rejected(self, tmp_path, installer, target):
        path = wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b""})
        source = DirectUrlSource("https://files.example.invalid/demo.whl", (("sha256", "0" * 64),))

        with pytest.raises(InstallFailure):
            installer.install_wheel(path, target, source=source)
        assert installer.record(target, "demo") is None

    def test_tampered_wheel_rejected(self, tmp_path, installer, target):
        path = wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b""})
        with zipfile.ZipFile(path) as original:
            members = {name: original.read(name) for name in original.namelist()}
        members["demo/__init__.py"] = b"import os\n"
        with zipfile.ZipFile(path, "w") as rewritten:
            for name, data in members.items():
                rewritten.writestr(name, data)

        with pytest.raises(InstallFailure):
            installer.install_wheel(path, target)
        assert not (target.root / "demo").exists()


class TestAtomicity:
    """A failed install leaves the environment as it was."""

    def test_failure_rolls_back_partial_install(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "q", "1.0", {"q/__init__.py": b"Q = 1\n"}), target)
        p_wheel = wheel(tmp_path, "p", "1.0", {"p/a.py": b"A = 1\n", "p/b.py": b"B = 1\n"})

        with patch.object(Installer, "_link_file", failing_on("b.py")):
            with pytest.raises(InstallFailure) as excinfo:
                installer.install_wheel(p_wheel, target)

        assert excinfo.value.package == "p"
        assert not (target.root / "p" / "a.py").exists()
        assert not (target.root / "p" / "b.py").exists()
        assert not (target.root / "p").exists()
        assert installer.record(target, "p") is None
        assert installer.verify(target, ["q"]) == {"q": []}
        assert list(target.staging_root.iterdir()) == []

    def test_failed_upgrade_restores_previous_version(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b"V = 1\n", "demo/b.py": b""}), target)
        upgrade = wheel(tmp_path, "demo", "2.0", {"demo/__init__.py": b"V = 2\n", "demo/b.py": b"new"})

        with patch.object(Installer, "_link_file", failing_on("b.py")):
            with pytest.raises(InstallFailure):
                installer.install_wheel(upgrade, target)

        record = installer.record(target, "demo")
        assert str(record.version) == "1.0"
        assert (target.root / "demo" / "__init__.py").read_bytes() == b"V = 1\n"
        assert installer.verify(target) == {"demo": []}

    def test_failure_restores_file_of_another_package(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "q", "1.0", {"shared.py": b"Q = 1\n", "q/__init__.py": b""}), target)
        p_wheel = wheel(tmp_path, "p", "1.0", {"shared.py": b"P = 1\n", "zz.py": b""})

        with patch.object(Installer, "_link_file", failing_on("zz.py")):
            with pytest.raises(InstallFailure):
                installer.install_wheel(p_wheel, target)

        assert (target.root / "shared.py").read_bytes() == b"Q = 1\n"
        assert not (target.root / "zz.py").exists()
        assert installer.record(target, "p") is None
        assert installer.verify(target, ["q"]) == {"q": []}
        assert list(target.staging_root.iterdir()) == []

    def test_overwriting_file_of_another_package(self, tmp_path, installer, target, caplog):
        installer.install_wheel(wheel(tmp_path, "q", "1.0", {"shared.py": b"Q = 1\n"}), target)

        with caplog.at_level("WARNING", logger="depforge.installer.installer"):
            installer.install_wheel(wheel(tmp_path, "p", "1.0", {"shared.py": b"P = 1\n"}), target)

        assert (target.root / "shared.py").read_bytes() == b"P = 1\n"
        assert installer.verify(target, ["p"]) == {"p": []}
        assert "Overwriting shared.py" in caplog.text

    def test_replace_removes_old_files(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b"", "demo/old.py": b""}), target)

        record = installer.install_wheel(
            wheel(tmp_path, "demo", "2.0", {"demo/__init__.py": b"", "demo/new.py": b""}), target
        )

        assert str(record.version) == "2.0"
        assert not (target.root / "demo" / "old.py").exists()
        assert (target.root / "demo" / "new.py").exists()
        assert not (target.root / "demo-1.0.dist-info").exists()
        assert [r.name for r in installer.installed(target)] == ["demo"]


class TestUninstallAndVerify:
    """Removal and integrity checks."""

    def test_uninstall_removes_everything(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "demo", "1.0", {"demo/sub/__init__.py": b"", "demo/__init__.py": b""}), target)
        installer.install_wheel(wheel(tmp_path, "keep", "1.0", {"keep.py": b""}), target)

        removed = asyncio.run(installer.uninstall(["Demo", "missing"], target))

        assert [str(r) for r in removed] == ["demo==1.0"]
        assert not (target.root / "demo").exists()
        assert target.find("demo") is None
        assert (target.root / "keep.py").exists()

    def test_verify_detects_tampering(self, tmp_path, installer, target):
        installer.install_wheel(wheel(tmp_path, "demo", "1.0", {"demo/__init__.py": b"", "demo/x.py": b"x"}), target)
        (target.root / "demo" / "__init__.py").write_text("changed")
        (target.root / "demo" / "x.py").unlink()

        problems = installer.verify(target)["demo"]

        assert "demo/__init__.py: hash mismatch" in problems
        assert "demo/x.py: missing" in problems

    def test_verify_unknown_package(self, installer, target):
        assert installer.verify(target, ["ghost"]) == {"ghost": ["not installed"]}


class TestInstallGraph:
    """Installing a resolved graph."""

    def test_install_then_skip(self, provider, installer, target):
        provider.add("app", "1.0", ["lib>=1"])
        provider.add("lib", "1.0")
        provider.add("lib", "1.2")
        graph = asyncio.run(Resolver(provider).resolve([parse("app")]))

        first = asyncio.run(installer.install(graph, target, requested=["app"]))
        second = asyncio.run(installer.install(graph, target, requested=["app"]))

        assert sorted(str(r) for r in first.installed) == ["app==1.0", "lib==1.2"]
        assert first.skipped == []
        assert second.installed == []
        assert [r.name for r in second.records] == ["app", "lib"]
        assert (installer.record(target, "app").dist_info / "REQUESTED").exists()
        assert not (installer.record(target, "lib").dist_info / "REQUESTED").exists()

    def test_upgrade_replaces_installed_version(self, provider, installer, target):
        provider.add("lib", "1.0")
        asyncio.run(installer.install(asyncio.run(Resolver(provider).resolve([parse("lib")])), target))
        provider.add("lib", "2.0")

        report = asyncio.run(installer.install(asyncio.run(Resolver(provider).resolve([parse("lib")])), target))

        assert [str(r) for r in report.installed] == ["lib==2.0"]
        assert [str(r) for r in installer.installed(target)] == ["lib==2.0"]

    def test_fetch_failure_installs_nothing(self, provider, installer, target):
        provider.add("app", "1.0", ["lib"])
        provider.add("lib", "1.0")
        graph = asyncio.run(Resolver(provider).resolve([parse("app")]))

        async def broken(candidate):
            raise InstallFailure(candidate.name, "download failed")

        with patch.object(provider, "fetch_wheel", broken):
            with pytest.raises(InstallFailure):
                asyncio.run(installer.install(graph, target))
        assert installer.installed(target) == []
