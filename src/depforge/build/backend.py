"""The ``[build-system]`` table of a source tree or source archive."""
from __future__ import annotations

import sys
import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from ..cache.keys import digest
from ..constants import Constants
from ..errors import BuildFailure, ParseError
from ..versioning.models import Requirement
from ..versioning.parser import parse

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass(frozen=True)
class BuildSystem:
    """Build requirements and backend entry point of a project."""

    requires: Tuple[Requirement, ...] = ()
    backend: str = Constants.DEFAULT_BUILD_BACKEND
    backend_path: Tuple[str, ...] = ()

    def fingerprint(self, interpreter_tag: str) -> str:
        """Digest of everything besides the sources that determines a build's output."""
        return digest(
            sorted(str(r) for r in self.requires),
            self.backend,
            list(self.backend_path),
            interpreter_tag,
        )


def default_build_system() -> BuildSystem:
    return BuildSystem(
        requires=tuple(parse(text) for text in Constants.DEFAULT_BUILD_REQUIRES),
        backend=Constants.DEFAULT_BUILD_BACKEND,
    )


def _read_archive_pyproject(archive: Path) -> Optional[bytes]:
    """``pyproject.toml`` from the archive root or its single top-level directory."""
    wanted = lambda name: name.count("/") <= 1 and name.rsplit("/", 1)[-1] == "pyproject.toml"
    if archive.name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            names = sorted((n for n in zf.namelist() if wanted(n)), key=len)
            return zf.read(names[0]) if names else None
    with tarfile.open(archive) as tf:
        members = sorted((m for m in tf.getmembers() if m.isfile() and wanted(m.name)), key=lambda m: len(m.name))
        if not members:
            return None
        handle = tf.extractfile(members[0])
        return handle.read() if handle else None


def build_system_from_pyproject(data: Optional[dict], package: str) -> BuildSystem:
    """Apply PEP 517/518 defaults to a parsed pyproject document."""
    table = (data or {}).get("build-system")
    if table is None:
        return default_build_system()
    if "requires" not in table:
        raise BuildFailure(package, "build-system", "[build-system] table is missing the 'requires' key")
    try:
        requires: List[Requirement] = [parse(text) for text in table["requires"]]
    except ParseError as exc:
        raise BuildFailure(package, "build-system", f"invalid build requirement: {exc}") from exc
    backend = table.get("build-backend")
    if not backend:
        return BuildSystem(requires=tuple(requires), backend=Constants.DEFAULT_BUILD_BACKEND)
    return BuildSystem(
        requires=tuple(requires),
        backend=backend,
        backend_path=tuple(table.get("backend-path", ())),
    )


def load_build_system(source: Path, package: str) -> BuildSystem:
    """Read the build system of a source tree or archive without building anything."""
    source = Path(source)
    try:
        if source.is_dir():
            path = source / "pyproject.toml"
            raw = path.read_bytes() if path.is_file() else None
        else:
            raw = _read_archive_pyproject(source)
        data = tomllib.loads(raw.decode("utf-8")) if raw is not None else None
    except (OSError, tarfile.TarError, zipfile.BadZipFile, UnicodeDecodeError) as exc:
        raise BuildFailure(package, "build-system", f"cannot read {source.name}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise BuildFailure(package, "build-system", f"invalid pyproject.toml: {exc}") from exc
    return build_system_from_pyproject(data, package)
