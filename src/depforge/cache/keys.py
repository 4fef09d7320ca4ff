"""Cache buckets, keys and source fingerprints."""
from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Tuple

from packaging.utils import canonicalize_name

_SKIP_DIRS = frozenset({".git", ".hg", ".svn", "__pycache__", ".tox", ".nox", ".venv", "build", "dist"})


class CacheBucket(Enum):
    """Top-level cache directories. The suffix is bumped on layout changes."""

    WHEELS = "wheels-v0"
    BUILT_WHEELS = "built-wheels-v0"
    SIMPLE = "simple-v0"
    GIT = "git-v0"
    INTERPRETER = "interpreter-v0"
    ARCHIVE = "archive-v0"


def digest(*parts: object) -> str:
    """Stable sha256 over JSON-serialized parts."""
    payload = json.dumps([str(p) if not isinstance(p, (list, tuple)) else [str(x) for x in p] for p in parts])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheKey:
    """Deterministic identity of a cache entry.

    ``parts`` holds the package identity, version, source fingerprint and
    build/environment fingerprint as applicable; the entry directory is
    named after their digest.
    """

    bucket: CacheBucket
    package: str
    parts: Tuple[str, ...]

    @property
    def digest(self) -> str:
        return digest(self.bucket.value, self.package, *self.parts)

    @property
    def relative_path(self) -> Path:
        return Path(self.bucket.value) / (self.package or "_") / self.digest[:32]

    def __str__(self) -> str:
        return f"{self.bucket.value}/{self.package or '_'}/{self.digest[:12]}"


def listing_key(index_url: str, package: str) -> CacheKey:
    return CacheKey(CacheBucket.SIMPLE, canonicalize_name(package), (index_url,))


def wheel_key(package: str, version: str, url: str, sha256: str = "") -> CacheKey:
    return CacheKey(CacheBucket.WHEELS, canonicalize_name(package), ("wheel", version, url, sha256))


def metadata_key(package: str, version: str, url: str, sha256: str = "") -> CacheKey:
    return CacheKey(CacheBucket.WHEELS, canonicalize_name(package), ("metadata", version, url, sha256))


def sdist_key(package: str, version: str, url: str, sha256: str = "") -> CacheKey:
    return CacheKey(CacheBucket.ARCHIVE, canonicalize_name(package), ("sdist", version, url, sha256))


def archive_key(package: str, source_fingerprint: str) -> CacheKey:
    return CacheKey(CacheBucket.ARCHIVE, canonicalize_name(package) if package else "", (source_fingerprint,))


def build_key(package: str, source_fingerprint: str, build_fingerprint: str, kind: str = "wheel") -> CacheKey:
    return CacheKey(
        CacheBucket.BUILT_WHEELS,
        canonicalize_name(package) if package else "",
        (kind, source_fingerprint, build_fingerprint),
    )


def git_key(url: str, kind: str = "db", rev: str = "") -> CacheKey:
    return CacheKey(CacheBucket.GIT, "", (kind, url, rev))


def interpreter_key(executable: str, mtime: float) -> CacheKey:
    return CacheKey(CacheBucket.INTERPRETER, "", (executable, repr(mtime)))


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            sha.update(chunk)
    return sha.hexdigest()


def _walk_files(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.endswith(".egg-info"))
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def fingerprint_tree(root: Path) -> str:
    """Content hash of a source tree: relative paths, modes and file digests.

    VCS metadata, caches and build outputs are ignored, so a tree only gets a
    new fingerprint when its sources change.
    """
    root = Path(root)
    sha = hashlib.sha256()
    for path in _walk_files(root):
        rel = path.relative_to(root).as_posix()
        executable = os.access(path, os.X_OK)
        sha.update(f"{rel}\0{int(executable)}\0".encode("utf-8"))
        sha.update(file_sha256(path).encode("ascii"))
    return sha.hexdigest()


def fingerprint_path(path: Path) -> str:
    """Fingerprint a source tree or a single archive file."""
    path = Path(path)
    if path.is_dir():
        return fingerprint_tree(path)
    return file_sha256(path)
