"""Metadata extraction from wheels, source trees and source archives."""
from __future__ import annotations

import logging
import os
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Optional

from packaging.markers import Marker
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import InvalidWheelFilename, canonicalize_name, parse_wheel_filename
from packaging.version import InvalidVersion, Version

from ..errors import MetadataUnavailable, ParseError
from ..versioning.models import Requirement
from ..versioning.parser import parse
from .models import Metadata, parse_core_metadata

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

_STATIC_FIELDS = ("version", "dependencies", "optional-dependencies", "requires-python")


def find_dist_info(names, package: Optional[str] = None) -> str:
    """Return the single top-level ``*.dist-info`` directory in a wheel listing."""
    candidates = sorted({
        name.split("/", 1)[0]
        for name in names
        if "/" in name and name.split("/", 1)[0].endswith(".dist-info")
    })
    if package:
        wanted = canonicalize_name(package)
        matching = [c for c in candidates if canonicalize_name(c[: -len(".dist-info")].rsplit("-", 1)[0]) == wanted]
        candidates = matching or candidates
    if len(candidates) != 1:
        raise MetadataUnavailable(package or "<wheel>", f"expected one .dist-info directory, found {len(candidates)}")
    return candidates[0]


def read_wheel_metadata_bytes(path: Path) -> bytes:
    """Raw ``METADATA`` of a wheel file."""
    try:
        name = parse_wheel_filename(Path(path).name)[0]
    except InvalidWheelFilename as exc:
        raise MetadataUnavailable(Path(path).name, str(exc)) from exc
    try:
        with zipfile.ZipFile(path) as archive:
            dist_info = find_dist_info(archive.namelist(), name)
            return archive.read(f"{dist_info}/METADATA")
    except (zipfile.BadZipFile, KeyError, OSError) as exc:
        raise MetadataUnavailable(name, f"cannot read wheel {Path(path).name}: {exc}") from exc


def read_wheel_metadata(path: Path) -> Metadata:
    name, version, _, tags = parse_wheel_filename(Path(path).name)
    metadata = parse_core_metadata(read_wheel_metadata_bytes(path), tags=sorted(tags, key=str))
    if metadata.name != name or metadata.version != version:
        raise MetadataUnavailable(
            name, f"wheel filename says {name} {version}, METADATA says {metadata.name} {metadata.version}"
        )
    return metadata


def load_pyproject(source_dir: Path) -> Optional[dict]:
    path = Path(source_dir) / "pyproject.toml"
    if not path.is_file():
        return None
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise MetadataUnavailable(str(source_dir), f"invalid pyproject.toml: {exc}") from exc


def static_metadata(source_dir: Path) -> Optional[Metadata]:
    """Metadata from ``[project]`` when every field needed for resolution is static.

    Returns None when the table is missing or marks any of version,
    dependencies, optional-dependencies or requires-python as dynamic.
    """
    pyproject = load_pyproject(source_dir)
    if not pyproject or "project" not in pyproject:
        return None
    project = pyproject["project"]
    dynamic = set(project.get("dynamic", []))
    if dynamic.intersection(_STATIC_FIELDS) or "name" not in project or "version" not in project:
        return None
    name = project["name"]
    try:
        version = Version(project["version"])
        requires_python = SpecifierSet(project.get("requires-python", ""))
        requires = [parse(text) for text in project.get("dependencies", [])]
        extras = set()
        for extra, items in project.get("optional-dependencies", {}).items():
            extra_name = canonicalize_name(extra)
            extras.add(extra_name)
            for text in items:
                marker_text = f'extra == "{extra_name}"'
                req = parse(text)
                if req.marker is not None:
                    marker_text = f"({req.marker}) and {marker_text}"
                requires.append(Requirement(req.name, req.specifier, req.extras, Marker(marker_text), req.source))
    except (InvalidVersion, InvalidSpecifier, ParseError) as exc:
        raise MetadataUnavailable(name, f"invalid [project] table: {exc}") from exc
    return Metadata(
        name=canonicalize_name(name),
        version=version,
        requires_dist=tuple(requires),
        provides_extra=frozenset(extras),
        requires_python=requires_python,
    )


def _safe_members(archive_root: Path, names):
    root = archive_root.resolve()
    for name in names:
        target = (archive_root / name).resolve()
        if os.path.commonpath([str(root), str(target)]) != str(root):
            raise MetadataUnavailable(str(archive_root), f"archive member escapes destination: {name}")


def unpack_archive(archive: Path, dest: Path) -> Path:
    """Extract a source archive and return the project root inside it.

    sdists conventionally contain a single top-level directory; that
    directory is returned when present.
    """
    archive = Path(archive)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if archive.name.endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                _safe_members(dest, zf.namelist())
                zf.extractall(dest)
        else:
            with tarfile.open(archive) as tf:
                members = [m for m in tf.getmembers() if not (m.issym() or m.islnk() or m.isdev())]
                _safe_members(dest, [m.name for m in members])
                tf.extractall(dest, members=members)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise MetadataUnavailable(archive.name, f"cannot unpack archive: {exc}") from exc
    entries = [p for p in dest.iterdir()]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest
